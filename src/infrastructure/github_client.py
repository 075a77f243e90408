import aiohttp
import asyncio
import hashlib
import json
import logging
import random
import re
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from src.domain.exceptions import (
    RateLimitExceededException,
    TransientUpstreamException,
    UpstreamException,
    UserNotFoundException,
)
from src.domain.interfaces import PageSource
from src.domain.models import PageFresh, PageNotModified, PageOutcome
from src.infrastructure.acl import GitHubTranslator

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=60, connect=10)
MAX_RETRIES = 5
RETRYABLE_STATUSES = {500, 502, 503, 504}

# <https://api.github.com/user/1/repos?per_page=100&page=2>; rel="next"
LINK_PATTERN = re.compile(r'<([^>]+)>\s*;\s*rel="([^"]+)"')


def parse_link_header(value: Optional[str]) -> Dict[str, int]:
    """
    Maps each rel of a GitHub Link header to the page number it points at.
    Links without a numeric page parameter are ignored.
    """
    pages: Dict[str, int] = {}
    if not value:
        return pages

    for url, rel in LINK_PATTERN.findall(value):
        page = parse_qs(urlparse(url).query).get('page')
        if page and page[0].isdigit():
            pages[rel] = int(page[0])
    return pages


def _content_etag(body: Any) -> str:
    digest = hashlib.sha1(json.dumps(body, sort_keys=True).encode()).hexdigest()
    return f'W/"{digest}"'


class GitHubRestClient(PageSource):
    """
    Client for the GitHub REST API.
    Handles authentication, conditional requests (ETags), pagination headers and retries.
    """

    def __init__(self, token: Optional[str] = None, api_url: str = "https://api.github.com"):
        self.headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "github-aggregated-stats",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            self.headers["Authorization"] = f"Bearer {token}"
        self.api_url = api_url.rstrip("/")

    async def fetch_page(
        self,
        session: aiohttp.ClientSession,
        username: str,
        page_number: int,
        etag: Optional[str] = None,
    ) -> PageOutcome:
        """
        Fetches one page of the repositories owned by ``username``.

        Returns:
            PageNotModified when ``etag`` is still current, PageFresh otherwise.
        """
        url = f"{self.api_url}/users/{username}/repos"
        params = {"type": "owner", "per_page": PAGE_SIZE, "page": page_number}

        status, headers, body = await self._get(session, url, resource=username, params=params, etag=etag)
        links = parse_link_header(headers.get("Link"))

        if status == 304:
            return PageNotModified(page_number=page_number, last_page=links.get("last"))

        if not isinstance(body, list):
            raise UpstreamException(f"Unexpected repository listing payload for '{username}' page {page_number}.")

        repos = [GitHubTranslator.to_domain(raw) for raw in body if raw]
        is_last_page = "next" not in links
        last_page = links.get("last")
        if last_page is None and is_last_page:
            last_page = page_number

        return PageFresh(
            page_number=page_number,
            repos=repos,
            etag=headers.get("ETag") or _content_etag(body),
            is_last_page=is_last_page,
            last_page=last_page,
        )

    async def fetch_languages(self, session: aiohttp.ClientSession, languages_url: str) -> Dict[str, int]:
        """Fetches the language -> bytes breakdown of a single repository."""
        if not languages_url:
            raise UpstreamException("Repository has no languages_url.")

        _, _, body = await self._get(session, languages_url, resource=languages_url)
        if not isinstance(body, dict):
            raise UpstreamException(f"Unexpected languages payload from {languages_url}.")
        return {str(name): int(count) for name, count in body.items()}

    async def _get(
        self,
        session: aiohttp.ClientSession,
        url: str,
        resource: str,
        params: Optional[Dict[str, Any]] = None,
        etag: Optional[str] = None,
    ) -> Tuple[int, Mapping[str, str], Any]:
        headers = dict(self.headers)
        if etag:
            headers["If-None-Match"] = etag

        for attempt in range(MAX_RETRIES):
          try:
            async with session.get(url, params=params, headers=headers, timeout=REQUEST_TIMEOUT) as response:
                if response.status == 304:
                    return response.status, response.headers, None

                if response.status == 404:
                    raise UserNotFoundException(resource)

                if response.status in {403, 429} and response.headers.get("X-RateLimit-Remaining") == "0":
                    raise RateLimitExceededException(reset_at=self._reset_at(response.headers))

                if response.status in RETRYABLE_STATUSES:
                    sleep_time = (2 ** attempt) + random.uniform(0, 1)
                    logger.warning(
                        f"Server error ({response.status}) for {url}, "
                        f"retrying in {sleep_time:.1f}s (attempt {attempt + 1}/{MAX_RETRIES})..."
                    )
                    await asyncio.sleep(sleep_time)
                    continue

                if response.status >= 400:
                    raise UpstreamException(
                        f"GitHub answered {response.status} for {url}.", status=response.status
                    )

                data = await response.json()
                return response.status, response.headers, data

          except (aiohttp.ClientError, asyncio.TimeoutError) as e:
              sleep_time = (2 ** attempt) + random.uniform(0, 1)
              logger.warning(
                  f"Request to {url} failed (attempt {attempt + 1}/{MAX_RETRIES}): {e!r}. "
                  f"Retrying in {sleep_time:.1f}s..."
              )
              await asyncio.sleep(sleep_time)

        raise TransientUpstreamException(f"Failed to fetch {url} after {MAX_RETRIES} attempts.")

    @staticmethod
    def _reset_at(headers: Mapping[str, str]) -> str:
        reset = headers.get("X-RateLimit-Reset")
        if reset and reset.isdigit():
            return datetime.fromtimestamp(int(reset), tz=timezone.utc).isoformat()
        return "unknown"
