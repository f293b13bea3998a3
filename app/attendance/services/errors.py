# --- Service layer exception classes ---

class ServiceError(Exception):
    """General exception class for the service layer (storage or collaborator failure)."""
    pass

class UsageError(ServiceError):
    """A precondition failed before any verification ran (no active session, unknown student, ...)."""
    pass

class NotFoundError(UsageError):
    """The referenced entity does not exist."""
    pass

class AuthorizationError(ServiceError):
    """The caller does not own the referenced resource."""
    pass
