from __future__ import annotations


class ReconcilerError(Exception):
    """Base error for enrichment and resolution failures."""


class ConfigurationError(ReconcilerError):
    """Raised at process start when credentials or a required provider are missing."""


class TransientError(ReconcilerError):
    """Raised when an external call may succeed if retried later."""


class RetryExhaustedError(TransientError):
    def __init__(self, name: str, attempts: int, last_status: int | None, detail: str) -> None:
        super().__init__(f"{name}: gave up after {attempts} attempts (status={last_status}): {detail}")
        self.name = name
        self.attempts = attempts
        self.last_status = last_status


class NonRetryableError(ReconcilerError):
    def __init__(self, name: str, status_code: int, detail: str) -> None:
        super().__init__(f"{name}: HTTP {status_code}: {detail}")
        self.name = name
        self.status_code = status_code


class NotFoundError(NonRetryableError):
    pass


class AmbiguousDataError(ReconcilerError):
    """Raised when a response lacks the fields needed to make a decision."""


class MalformedResponseError(ReconcilerError):
    """Raised when structured output (usually from an LLM) cannot be parsed or validated."""


class ConflictError(ReconcilerError):
    def __init__(self, source: str, external_id: str, owner_work_id: str) -> None:
        super().__init__(f"{source}:{external_id} is already linked to work {owner_work_id}")
        self.source = source
        self.external_id = external_id
        self.owner_work_id = owner_work_id


class RepositoryError(ReconcilerError):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""
