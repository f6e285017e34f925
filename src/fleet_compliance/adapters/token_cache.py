"""Process-wide cache for the GitHub App installation token.

The cache is an explicitly owned collaborator: main.py creates one instance
for the process lifetime and hands it to the GitHubClient. Reads are
lock-free once a token is cached; a cold or expired cache is refilled under
an asyncio.Lock so that concurrent callers share a single token exchange.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from fleet_compliance.adapters.github_models import InstallationToken
from fleet_compliance.observability import get_logger

logger = get_logger(__name__)

INSTALLATION_TOKEN_CACHE_KEY = "github_installation_token"


@dataclass(frozen=True)
class _CachedToken:
    token: str
    evict_at: datetime


class InstallationTokenCache:
    """In-memory installation token cache with early eviction.

    Tokens are evicted `refresh_margin` before GitHub's reported expiry so a
    token is never handed out at the edge of its validity window.

    Args:
        refresh_margin: How long before the real expiry a token is dropped.
        clock: Returns the current UTC time. Injected in tests.
    """

    def __init__(
        self,
        refresh_margin: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._refresh_margin = refresh_margin
        self._clock = clock or (lambda: datetime.now(UTC))
        self._entries: dict[str, _CachedToken] = {}
        self._lock = asyncio.Lock()

    def peek(self) -> str | None:
        """Return the cached token if it is still valid, without locking."""
        entry = self._entries.get(INSTALLATION_TOKEN_CACHE_KEY)
        if entry is not None and self._clock() < entry.evict_at:
            return entry.token
        return None

    async def get_or_create(self, factory: Callable[[], Awaitable[InstallationToken]]) -> str:
        """Return a valid token, running `factory` at most once per miss.

        Args:
            factory: Coroutine function performing the token exchange.

        Returns:
            The installation access token.
        """
        token = self.peek()
        if token is not None:
            return token

        async with self._lock:
            # Another caller may have filled the cache while we waited
            token = self.peek()
            if token is not None:
                return token

            logger.info("Installation token not cached, exchanging App JWT for a new one")
            issued = await factory()
            evict_at = issued.expires_at - self._refresh_margin
            self._entries[INSTALLATION_TOKEN_CACHE_KEY] = _CachedToken(token=issued.token, evict_at=evict_at)
            logger.info(
                "Installation token cached",
                expires_at=issued.expires_at.isoformat(),
                evict_at=evict_at.isoformat(),
            )
            return issued.token

    def invalidate(self) -> None:
        """Drop the cached token so the next call performs a fresh exchange."""
        if self._entries.pop(INSTALLATION_TOKEN_CACHE_KEY, None) is not None:
            logger.info("Installation token invalidated")
