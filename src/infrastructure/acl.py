from typing import Any, Dict
from src.domain.models import RepoRecord

class GitHubTranslator:
    """
    Anti-corruption layer that translates raw GitHub REST repository JSON into RepoRecord instances.
    """

    @staticmethod
    def to_domain(raw_repo: Dict[str, Any]) -> RepoRecord:
        """
        Transforms a raw entry of GET /users/{username}/repos into a RepoRecord.

        Args:
            raw_repo (Dict[str, Any]): One repository object from GitHub's REST response.

        Returns:
            RepoRecord: The domain model instance representing the repository.
        """
        name = raw_repo.get('full_name') or raw_repo.get('name')
        if not name:
            raise ValueError("full_name or name is required to build RepoRecord.")

        return RepoRecord(
            name=name,
            is_fork=bool(raw_repo.get('fork', False)),
            stars=raw_repo.get('stargazers_count') or 0,
            forks=raw_repo.get('forks_count') or 0,
            size_kb=raw_repo.get('size') or 0,
            languages_url=raw_repo.get('languages_url') or '',
        )
