"""Domain exceptions shared by the monitoring engine and the API layer."""


class SafeTripError(Exception):
    """Base class for errors raised by the monitoring engine."""


class ValidationError(SafeTripError, ValueError):
    """Malformed trip times or out-of-range thresholds, rejected before persistence."""


class TransientDeliveryError(SafeTripError):
    """A channel timed out or the provider answered with a server error."""


class PermanentTokenError(SafeTripError):
    """A push token was rejected as invalid or unregistered by the provider."""

    def __init__(self, token: str, reason: str):
        super().__init__(f"push token rejected: {reason}")
        self.token = token
        self.reason = reason


class DataIntegrityError(SafeTripError):
    """A stored record violates an invariant the scanner relies on."""


class ConcurrencyConflict(SafeTripError):
    """A write was based on a stale sync_version; re-read and retry."""

    def __init__(self, entity: str, entity_id: int, expected_version: int):
        super().__init__(f"{entity} {entity_id} was modified concurrently (expected version {expected_version})")
        self.entity = entity
        self.entity_id = entity_id
        self.expected_version = expected_version


class NotFoundError(SafeTripError, LookupError):
    pass


class InvalidTransition(SafeTripError):
    """An explicit user action is not allowed from the trip's current status."""
