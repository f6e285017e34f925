"""Domain error taxonomy for fleet-compliance-engine.

GitHub transport errors live next to the client in
adapters/github_client.py. The errors here are raised by the core services:

- NotFoundError             : a requested local record does not exist
- ConfigurationNotFoundError: the policy configuration document is absent
- InvalidConfigurationError : the document is malformed or incomplete

Configuration errors are fatal to the scan that hits them and recoverable
on the next attempt once the document is corrected.
"""


class FleetComplianceError(Exception):
    """Base class for all errors raised by the compliance pipeline."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(FleetComplianceError):
    """Raised when a persisted record cannot be found.

    Attributes:
        resource: Resource type name, e.g. Scan.
        resource_id: Identifier that was looked up.
    """

    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(f"{resource} {resource_id} was not found")
        self.resource = resource
        self.resource_id = resource_id


class ConfigurationError(FleetComplianceError):
    """Base class for policy configuration failures."""


class ConfigurationNotFoundError(ConfigurationError):
    """The configuration document is absent at its well-known path."""


class InvalidConfigurationError(ConfigurationError):
    """The configuration document is malformed or misses a required field."""
