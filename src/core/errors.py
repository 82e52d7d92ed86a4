"""
Error taxonomy for the scrape-to-calendar pipeline.
"""


class RosterSyncError(Exception):
    """Base class; `code` is the stable identifier surfaced to callers."""

    code = "SYNC_ERROR"


class MissingCredential(RosterSyncError):
    code = "MISSING_CREDENTIAL"


class AuthenticationFailed(RosterSyncError):
    """The portal rejected the login or bounced us back to the login page."""

    code = "AUTHENTICATION_FAILED"


class UpstreamRateLimited(RosterSyncError):
    code = "UPSTREAM_RATE_LIMITED"


class ExtractionFailed(RosterSyncError):
    """Generic navigation or parse fault. The scrape result carries the log so far."""

    code = "EXTRACTION_FAILED"


class PersistenceFailed(RosterSyncError):
    code = "PERSISTENCE_FAILED"


class CalendarContainerUnresolved(RosterSyncError):
    code = "CALENDAR_CONTAINER_UNRESOLVED"


class CalendarMutationFailed(RosterSyncError):
    code = "CALENDAR_MUTATION_FAILED"

    def __init__(self, message: str, external_id: str | None = None):
        super().__init__(message)
        self.external_id = external_id
