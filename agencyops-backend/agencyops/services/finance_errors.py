from __future__ import annotations

from typing import Optional


class ProjectFinanceError(Exception):
    """Base class for project finance engine failures."""


class InvalidPeriodWindow(ProjectFinanceError):
    """Project dates cannot produce a billing period window."""


class SyncUnavailable(ProjectFinanceError):
    """A usage or staff collaborator could not be reached during a sync pass."""

    def __init__(self, message: str, *, source: Optional[str] = None) -> None:
        super().__init__(message)
        self.source = source


class PersistenceFailure(ProjectFinanceError):
    """The record store rejected a write. Nothing was committed."""


class ConcurrentEditConflict(ProjectFinanceError):
    def __init__(self, project_id: str, month_number: int, expected_version: Optional[int], actual_version: Optional[int]) -> None:
        super().__init__(
            f"Period {month_number} of project {project_id} changed concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.project_id = project_id
        self.month_number = month_number
        self.expected_version = expected_version
        self.actual_version = actual_version


class EditNotAllowed(ProjectFinanceError):
    """Caller is not an authorized finance editor."""


class InvalidManualField(ProjectFinanceError):
    """Manual edit names an unknown field or carries an unusable value."""


class PeriodNotFound(ProjectFinanceError):
    pass
