"""Operator authorization against the configured GitHub team.

Only active members of `access_control.authorized_team` (`organization/team-slug`)
may use the operator endpoints. Any failure to establish membership denies.
"""

from fleet_compliance.adapters.github_client import GitHubApiError
from fleet_compliance.core.interfaces import IConfigurationProvider, IUserDirectory
from fleet_compliance.errors import ConfigurationError
from fleet_compliance.observability import get_logger

logger = get_logger(__name__)


class AuthorizationService:
    """Checks a GitHub user token against the authorized team.

    Args:
        directory: End-user scoped GitHub lookups.
        config_provider: Cached policy configuration.
        disabled: Skip the check entirely (local and test use).
    """

    def __init__(
        self,
        directory: IUserDirectory,
        config_provider: IConfigurationProvider,
        disabled: bool = False,
    ) -> None:
        self._directory = directory
        self._config_provider = config_provider
        self._disabled = disabled

    async def is_user_authorized(self, user_token: str | None) -> bool:
        """Return True if the token's user actively belongs to the authorized team."""
        if self._disabled:
            logger.info("Authorization disabled, bypassing team membership check")
            return True
        if not user_token:
            logger.warning("No user token supplied")
            return False

        try:
            config = await self._config_provider.get_config()
        except ConfigurationError as exc:
            logger.error("Configuration unavailable while checking authorization", error=exc.message)
            return False

        team = config.access_control.parse_team()
        if team is None:
            logger.error(
                "Invalid authorized team format, expected organization/team-slug",
                authorized_team=config.access_control.authorized_team,
            )
            return False

        organization, team_slug = team
        try:
            is_member = await self._directory.is_user_member_of_team(user_token, organization, team_slug)
        except GitHubApiError as exc:
            logger.error(
                "Team membership lookup failed",
                organization=organization,
                team_slug=team_slug,
                status_code=exc.status_code,
                error=exc.message,
            )
            return False

        logger.info("Team membership checked", organization=organization, team_slug=team_slug, is_member=is_member)
        return is_member
