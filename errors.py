class LedgerError(ValueError):
    """Terminal failure of a ledger operation; surfaced to the caller, never retried."""


class NotFound(LedgerError):
    pass


class InvalidInput(LedgerError):
    pass


class InvalidAmount(InvalidInput):
    pass


class Conflict(LedgerError):
    pass


class DependencyFailure(RuntimeError):
    """The persistent store or a transport was unavailable. Safe to retry."""


class ExternalDegraded(RuntimeError):
    """An auxiliary collaborator (AI, email) failed; callers fall back."""
