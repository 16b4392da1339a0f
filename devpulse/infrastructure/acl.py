from datetime import datetime, timezone
from typing import Any, Dict, Optional
from devpulse.domain.models import EventDTO, ProfileDTO, RateLimitDTO, RepositoryDTO


def _parse_timestamp(raw_date: Optional[str]) -> Optional[datetime]:
    if not raw_date:
        return None
    return datetime.fromisoformat(raw_date.replace("Z", "+00:00"))


class GitHubTranslator:
    """
    Anti-corruption layer that translates raw GitHub REST JSON responses into DTOs.
    """

    @staticmethod
    def to_profile(raw_user: Dict[str, Any]) -> ProfileDTO:
        """
        Transforms a raw `/users/{handle}` response into a ProfileDTO.

        Args:
            raw_user (Dict[str, Any]): The raw JSON body from GitHub.

        Returns:
            ProfileDTO: The profile data-transfer object.
        """
        if raw_user.get('id') is None or not raw_user.get('login'):
            raise ValueError("id and login are required to build ProfileDTO.")

        return ProfileDTO(
            github_id=raw_user['id'],
            handle=raw_user['login'],
            name=raw_user.get('name'),
            avatar_url=raw_user.get('avatar_url'),
            bio=raw_user.get('bio'),
            public_repos=raw_user.get('public_repos') or 0,
            followers=raw_user.get('followers') or 0,
            following=raw_user.get('following') or 0,
            created_at=_parse_timestamp(raw_user.get('created_at')),
            updated_at=_parse_timestamp(raw_user.get('updated_at')),
        )

    @staticmethod
    def to_repository(raw_repo: Dict[str, Any]) -> RepositoryDTO:
        if raw_repo.get('id') is None:
            raise ValueError("id is required to build RepositoryDTO.")

        name = raw_repo.get('name', '')
        return RepositoryDTO(
            github_id=raw_repo['id'],
            name=name,
            full_name=raw_repo.get('full_name') or name,
            description=raw_repo.get('description'),
            language=raw_repo.get('language'),
            stargazers_count=raw_repo.get('stargazers_count') or 0,
            forks_count=raw_repo.get('forks_count') or 0,
            open_issues_count=raw_repo.get('open_issues_count') or 0,
            created_at=_parse_timestamp(raw_repo.get('created_at')),
            updated_at=_parse_timestamp(raw_repo.get('updated_at')),
            pushed_at=_parse_timestamp(raw_repo.get('pushed_at')),
        )

    @staticmethod
    def to_event(raw_event: Dict[str, Any]) -> EventDTO:
        """
        Transforms a raw event from `/users/{handle}/events`. GitHub sends event
        IDs as numeric strings.
        """
        created_at = _parse_timestamp(raw_event.get('created_at'))
        if raw_event.get('id') is None or created_at is None:
            raise ValueError("id and created_at are required to build EventDTO.")

        repo_data = raw_event.get('repo') or {}
        return EventDTO(
            github_id=int(raw_event['id']),
            event_type=raw_event.get('type') or 'UnknownEvent',
            repo_name=repo_data.get('name'),
            payload=raw_event.get('payload') or {},
            created_at=created_at,
        )

    @staticmethod
    def to_rate_limit(raw_body: Dict[str, Any]) -> RateLimitDTO:
        core = raw_body.get('resources', {}).get('core', {})
        return RateLimitDTO(
            limit=core.get('limit', 0),
            remaining=core.get('remaining', 0),
            reset_at=datetime.fromtimestamp(core.get('reset', 0), tz=timezone.utc),
        )
