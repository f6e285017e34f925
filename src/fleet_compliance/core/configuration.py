"""Policy configuration loading and caching.

ConfigurationService fetches the YAML document from the organization's
configuration repository, validates it into an AppConfig and keeps it in a
ConfigurationCache. The cache has a sliding expiration: every hit extends the
window. A cold or expired cache is refilled under the cache's lock with
double-checked locking, so N concurrent readers trigger one upstream fetch.
"""

import asyncio
import base64
import binascii
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import yaml
from pydantic import ValidationError

from fleet_compliance.core.config_models import AppConfig
from fleet_compliance.core.interfaces import IConfigurationSource
from fleet_compliance.errors import ConfigurationNotFoundError, InvalidConfigurationError
from fleet_compliance.observability import get_logger

logger = get_logger(__name__)


def parse_config(text: str) -> AppConfig:
    """Parse and validate a YAML configuration document.

    Args:
        text: Raw YAML.

    Returns:
        The validated configuration with every action list normalized.

    Raises:
        InvalidConfigurationError: On malformed YAML, schema mismatch, or a
            missing/blank access_control.authorized_team.
    """
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise InvalidConfigurationError(f"Configuration is not valid YAML: {exc}") from exc

    if not isinstance(document, dict):
        raise InvalidConfigurationError("Configuration must be a YAML mapping")

    try:
        config = AppConfig.model_validate(document)
    except ValidationError as exc:
        raise InvalidConfigurationError(f"Configuration does not match the expected schema: {exc}") from exc

    if not (config.access_control.authorized_team or "").strip():
        raise InvalidConfigurationError("access_control.authorized_team is required")

    return config


def dump_config(config: AppConfig) -> str:
    """Serialize a configuration back to YAML using the document's key names."""
    document = config.model_dump(by_alias=True, exclude_none=True)
    return yaml.safe_dump(document, sort_keys=False)


class ConfigurationCache:
    """Single-entry cache with sliding expiration.

    Args:
        sliding_window: How long an entry lives after its last access.
        clock: Returns the current UTC time. Injected in tests.
    """

    def __init__(
        self,
        sliding_window: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._sliding_window = sliding_window
        self._clock = clock or (lambda: datetime.now(UTC))
        self._value: AppConfig | None = None
        self._expires_at: datetime | None = None
        self.lock = asyncio.Lock()

    def get(self) -> AppConfig | None:
        """Return the cached configuration and extend its window, or None."""
        if self._value is None or self._expires_at is None:
            return None
        now = self._clock()
        if now >= self._expires_at:
            self._value = None
            self._expires_at = None
            return None
        self._expires_at = now + self._sliding_window
        return self._value

    def set(self, config: AppConfig) -> None:
        self._value = config
        self._expires_at = self._clock() + self._sliding_window

    def invalidate(self) -> None:
        self._value = None
        self._expires_at = None


class ConfigurationService:
    """Loads the policy configuration through the GitHub client.

    Args:
        source: Anything that can return base64 file content by repository name.
        cache: Shared ConfigurationCache.
        repository_name: Repository holding the document (default `.github`).
        path: Path of the document (default `config.yaml`).
    """

    def __init__(
        self,
        source: IConfigurationSource,
        cache: ConfigurationCache,
        repository_name: str = ".github",
        path: str = "config.yaml",
    ) -> None:
        self._source = source
        self._cache = cache
        self._repository_name = repository_name
        self._path = path

    async def get_config(self, force_refresh: bool = False) -> AppConfig:
        """Return the current configuration.

        Args:
            force_refresh: Skip the cache and fetch from GitHub immediately.

        Returns:
            The validated AppConfig.

        Raises:
            ConfigurationNotFoundError: If the document does not exist.
            InvalidConfigurationError: If it cannot be parsed or validated.
        """
        if not force_refresh:
            cached = self._cache.get()
            if cached is not None:
                return cached

        async with self._cache.lock:
            if not force_refresh:
                cached = self._cache.get()
                if cached is not None:
                    return cached

            config = await self._fetch()
            self._cache.set(config)
            logger.info(
                "Configuration loaded",
                repository=self._repository_name,
                path=self._path,
                policies=len(config.policies),
            )
            return config

    def invalidate(self) -> None:
        """Drop the cached configuration."""
        self._cache.invalidate()

    async def _fetch(self) -> AppConfig:
        logger.info("Fetching configuration from GitHub", repository=self._repository_name, path=self._path)
        encoded = await self._source.get_file_content(self._repository_name, self._path)
        if encoded is None:
            logger.warning(
                "Configuration file not found",
                repository=self._repository_name,
                path=self._path,
            )
            raise ConfigurationNotFoundError(
                f"Configuration file '{self._path}' not found in repository '{self._repository_name}'"
            )

        try:
            text = base64.b64decode(encoded).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise InvalidConfigurationError(f"Configuration content could not be decoded: {exc}") from exc

        try:
            return parse_config(text)
        except InvalidConfigurationError as exc:
            logger.error("Configuration is invalid", error=exc.message)
            raise
