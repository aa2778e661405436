"""Error taxonomy for the PM sync engine.

Each error maps to the narrowest scope that can recover from it:

- ConfigurationError: installation or mapping is malformed. Fatal for the
  whole pass, raised before any network call.
- ExternalAPIError: network/HTTP failure talking to the PM tool. Recovered
  per mapping; sibling mappings keep running.
- ItemProcessingError: one item's mapping or persistence write failed.
  Recovered per item; the rest of the batch keeps running.
- AIResolutionError: the AI collaborator failed or returned unusable data.
  Never fatal; the resolver falls back to latest_wins.
"""

from __future__ import annotations


class PMSyncError(Exception):
    """Base class for all sync engine errors."""


class ConfigurationError(PMSyncError):
    """Raised when an installation or entity mapping cannot be synced as configured."""


class ExternalAPIError(PMSyncError):
    """Raised when the external PM tool cannot be reached or answers badly.

    Attributes:
        status_code: HTTP status returned by the tool, if any.
        endpoint: The URL that was called.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        endpoint: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class ItemProcessingError(PMSyncError):
    """Raised when a single external item or local record cannot be processed.

    Attributes:
        external_id: The external item ID, when known.
    """

    def __init__(self, message: str, external_id: str | None = None) -> None:
        self.external_id = external_id
        super().__init__(message)


class AIResolutionError(PMSyncError):
    """Raised when the AI collaborator fails or returns a malformed suggestion."""


class InstallationNotFoundError(PMSyncError):
    """Raised when an installation ID does not resolve to a stored installation."""

    def __init__(self, installation_id: str) -> None:
        self.installation_id = installation_id
        super().__init__(f"Installation '{installation_id}' not found")


class SyncAlreadyRunningError(PMSyncError):
    """Raised when a manual sync is requested while a pass is already active."""

    def __init__(self, installation_id: str) -> None:
        self.installation_id = installation_id
        super().__init__(f"A sync pass is already running for installation '{installation_id}'")
