from __future__ import annotations

from datetime import datetime, timezone

import pytest

from agencyops.services.finance_errors import SyncUnavailable
from agencyops.services.finance_sources import StaffMember
from agencyops.services.labor_allocation import LaborAllocator, fot_total, share_of_salary

NOW = datetime(2024, 3, 10, tzinfo=timezone.utc)


def test_share_is_not_rounded():
    assert share_of_salary(100, 3) == pytest.approx(33.3333333333)
    assert share_of_salary(100, 0) == 100


def test_salary_is_conserved_across_active_projects(staff):
    allocator = LaborAllocator(staff)
    shares = [allocator.allocate(project_id, NOW)["pm-1"].share_for_this_project for project_id in ("a", "b", "c")]
    assert sum(shares) == pytest.approx(300000)


def test_kpi_paid_and_unpaid_staff_are_skipped(staff):
    staff.staff.append(StaffMember(user_id="intern-1", name="Timur", job_title="Intern", base_salary=0))
    allocations = LaborAllocator(staff).allocate("p1", NOW)
    assert list(allocations) == ["pm-1"]
    allocation = allocations["pm-1"]
    assert allocation.active_projects_count == 3
    assert allocation.share_for_this_project == 100000
    assert allocation.calculated_at == NOW
    assert fot_total(allocations) == 100000


def test_member_without_active_projects_is_skipped(staff):
    staff.active_counts["pm-1"] = 0
    assert LaborAllocator(staff).allocate("p1", NOW) == {}


def test_allocations_are_ordered_by_user(staff):
    staff.staff.insert(0, StaffMember(user_id="zz-9", name="Zarina", job_title="Designer", base_salary=90000))
    staff.staff.append(StaffMember(user_id="aa-1", name="Arman", job_title="Copywriter", base_salary=60000))
    assert list(LaborAllocator(staff).allocate("p1", NOW)) == ["aa-1", "pm-1", "zz-9"]


def test_unreachable_staff_source_raises_sync_unavailable(staff):
    staff.error = TimeoutError("staff directory timed out")
    with pytest.raises(SyncUnavailable) as excinfo:
        LaborAllocator(staff).allocate("p1", NOW)
    assert excinfo.value.source == "staff"
