import argparse
import asyncio
import json
import os
import sys
import logging
from dotenv import load_dotenv

from src.infrastructure.github_client import GitHubRestClient
from src.infrastructure.database import PostgresCacheStore
from src.application.stats_service import StatsService
from src.domain.exceptions import UserNotFoundException
from src.domain.models import ForkFilter

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    handlers=[
        logging.StreamHandler(sys.stderr)
    ]
)
logger = logging.getLogger(__name__)

EXIT_NOT_FOUND = 2

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Aggregate stars, forks, size and languages across all repositories of a GitHub user."
    )
    parser.add_argument("username", help="GitHub login whose repositories are aggregated")
    parser.add_argument(
        "--exclude-forks",
        action="store_true",
        help="Leave forked repositories out of the aggregation",
    )
    return parser.parse_args(argv)

async def main(argv=None) -> int:
    args = parse_args(argv)

    # Load environment variables from .env file
    load_dotenv()

    github_token = os.getenv("GITHUB_TOKEN")
    db_url = os.getenv("DATABASE_URL")

    if not db_url:
        logger.error("DATABASE_URL is not set in the environment.")
        return 1

    if not github_token:
        logger.warning("GITHUB_TOKEN is not set. Using the unauthenticated GitHub rate limit.")

    github_client = GitHubRestClient(token=github_token)
    cache_store = PostgresCacheStore(db_url=db_url)
    stats_service = StatsService(github_client=github_client, cache_store=cache_store)

    fork_filter = ForkFilter.EXCLUDE_FORKS if args.exclude_forks else ForkFilter.INCLUDE_ALL

    try:
        await cache_store.create_schema()
        result = await stats_service.get_aggregated_stats(args.username, fork_filter)
    except UserNotFoundException:
        logger.error(f"GitHub user '{args.username}' does not exist.")
        return EXIT_NOT_FOUND
    except Exception as e:
        logger.exception(f"An unexpected error occurred: {e}")
        return 1
    finally:
        await cache_store.dispose()

    print(json.dumps(result.model_dump(by_alias=True), indent=2))
    return 0

def run() -> None:
    sys.exit(asyncio.run(main()))

if __name__ == "__main__":
    run()
