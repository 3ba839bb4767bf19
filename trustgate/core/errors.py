"""Domain error taxonomy shared by the resolvers, the admin services and the API."""


class TrustEngineError(Exception):
    """Base class for every error raised by the decision engine."""

    status_code = 500

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.context = context


class ValidationError(TrustEngineError):
    """Rejected input; nothing was written."""

    status_code = 422


class NotFoundError(TrustEngineError):
    """Unknown flag, rule, override or session."""

    status_code = 404


class StoreUnavailable(TrustEngineError):
    """Transient store failure (timeout, lost connection, exhausted pool)."""

    status_code = 503


class AuditWriteFailure(TrustEngineError):
    """An administrative mutation could not be audited and was rolled back."""

    status_code = 500


class TenantScopeViolation(TrustEngineError):
    """A store read returned rows belonging to another organization."""

    status_code = 403


class ConfigurationError(TrustEngineError):
    """The engine is pointed at a store it cannot run against."""

    status_code = 500
