from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, Mapping, Optional

from ..models import FotAllocation
from .finance_errors import SyncUnavailable
from .finance_sources import StaffSource

logger = logging.getLogger(__name__)


def share_of_salary(base_salary: float, active_projects_count: int) -> float:
    return float(base_salary) / max(int(active_projects_count), 1)


def fot_total(allocations: Mapping[str, FotAllocation]) -> float:
    return sum(allocation.share_for_this_project for allocation in allocations.values())


class LaborAllocator:
    """Splits fixed salaries of a project's team across each member's active projects.

    KPI-paid staff are skipped (their cost arrives through usage lines), as
    are members with no active project at all.
    """

    def __init__(self, staff_source: StaffSource) -> None:
        self._staff_source = staff_source

    def _active_count(self, user_id: str) -> int:
        try:
            return int(self._staff_source.get_active_project_count(user_id) or 0)
        except SyncUnavailable:
            raise
        except OSError as exc:
            raise SyncUnavailable(f"Active project count unavailable for {user_id}: {exc}", source="staff") from exc

    def allocate(self, project_id: str, now: Optional[datetime] = None) -> Dict[str, FotAllocation]:
        now = now or datetime.now(timezone.utc)
        try:
            staff = list(self._staff_source.get_fixed_salary_staff(project_id))
        except SyncUnavailable:
            raise
        except OSError as exc:
            raise SyncUnavailable(f"Staff roster unavailable: {exc}", source="staff") from exc

        allocations: Dict[str, FotAllocation] = {}
        for member in sorted(staff, key=lambda item: item.user_id):
            if member.has_kpi_rules or member.base_salary <= 0:
                continue
            active = self._active_count(member.user_id)
            if active <= 0:
                logger.info("Skipping FOT share for %s on project %s: no active projects", member.user_id, project_id)
                continue
            allocations[member.user_id] = FotAllocation(
                user_name=member.name,
                job_title=member.job_title or "",
                base_salary=member.base_salary,
                active_projects_count=active,
                share_for_this_project=share_of_salary(member.base_salary, active),
                calculated_at=now,
            )
        return allocations
