import pytest

from crm_sync.sync.architecture import ConflictType, Customer, Job
from crm_sync.sync.conflicts import ConflictChecker, overlaps
from crm_sync.sync.controller import CalendarSyncController
from fakes import at, make_integration


@pytest.fixture
def checker(storage, manager, registry):
    return ConflictChecker(storage, CalendarSyncController(storage, manager, registry))


async def book(storage, hour, duration_hours=2, customer_name="Alice", service="Brake service"):
    customer = Customer(user_id="user-1", name=customer_name)
    await storage.save_customer(customer)
    job = Job(
        user_id="user-1",
        customer_id=customer.id,
        service_name=service,
        booking_datetime=at(hour),
        duration_hours=duration_hours
    )
    await storage.save_job(job)
    return job


def test_overlap_is_symmetric_and_half_open():
    assert overlaps(at(10), at(12), at(11), at(13))
    assert overlaps(at(11), at(13), at(10), at(12))
    assert overlaps(at(10), at(14), at(11), at(12))
    # Back-to-back bookings do not clash
    assert not overlaps(at(10), at(12), at(12), at(13))
    assert not overlaps(at(12), at(13), at(10), at(12))


@pytest.mark.asyncio
async def test_overlapping_job_is_reported(storage, checker):
    await book(storage, 10)

    conflicts = await checker.check_conflict("user-1", at(11), at(13))

    assert len(conflicts) == 1
    assert conflicts[0].type == ConflictType.INTERNAL
    assert conflicts[0].title == "Alice - Brake service"
    assert conflicts[0].start == at(10)
    assert conflicts[0].end == at(12)


@pytest.mark.asyncio
async def test_job_does_not_conflict_with_itself(storage, checker):
    job = await book(storage, 10)

    assert await checker.check_conflict("user-1", at(10), at(12), exclude_job_id=job.id) == []


@pytest.mark.asyncio
async def test_adjacent_and_other_users_jobs_are_ignored(storage, checker):
    await book(storage, 10)
    await storage.save_job(Job(user_id="user-2", booking_datetime=at(12)))

    assert await checker.check_conflict("user-1", at(12), at(13)) == []


@pytest.mark.asyncio
async def test_default_duration_applies_without_job_duration(storage, checker):
    await book(storage, 10, duration_hours=None)

    # Default duration is two hours
    assert len(await checker.check_conflict("user-1", at(11, 30), at(12, 30))) == 1
    assert await checker.check_conflict("user-1", at(12), at(13)) == []


@pytest.mark.asyncio
async def test_calendar_events_are_reported(storage, checker, calendar):
    await storage.save_integration(make_integration())
    calendar.add_event("dentist", at(11), at(12), summary="Dentist")
    calendar.add_event("lunch", at(13), at(14), summary="Lunch")

    conflicts = await checker.check_conflict("user-1", at(10), at(13))

    assert [(c.type, c.title) for c in conflicts] == [(ConflictType.EXTERNAL, "Dentist")]


@pytest.mark.asyncio
async def test_job_mirror_is_not_double_counted(storage, checker, manager, registry, calendar):
    await storage.save_integration(make_integration())
    job = await book(storage, 10)
    await CalendarSyncController(storage, manager, registry).push_job("user-1", job.id)

    conflicts = await checker.check_conflict("user-1", at(11), at(13))

    assert [c.type for c in conflicts] == [ConflictType.INTERNAL]
