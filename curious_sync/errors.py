from __future__ import annotations


class CalendarSyncError(Exception):
    """Base exception for calendar sync errors."""


class ProviderError(CalendarSyncError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        return self.status_code in {404, 410}


class AuthError(ProviderError):
    pass


class SyncTokenExpiredError(ProviderError):
    pass


class MappingConflictError(CalendarSyncError):
    pass


class ConflictNotFoundError(CalendarSyncError):
    pass


class ValidationError(CalendarSyncError):
    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors) or "validation failed")
        self.errors = list(errors)


class MappingNotFoundError(CalendarSyncError):
    pass
