from datetime import timedelta

import pytest

from crm_sync.services.calendar_event import CalendarEvent
from crm_sync.sync.architecture import (
    ConflictResolution, Customer, EntityType, Job, LinkStatus, utcnow
)
from crm_sync.sync.controller import (
    CalendarSyncController, build_description, merge_event_into_job, strip_generated_lines
)
from crm_sync.sync.errors import EntityNotFound, IntegrationNotFound
from fakes import at, make_integration


@pytest.fixture
def controller(storage, manager, registry):
    return CalendarSyncController(storage, manager, registry)


async def setup_job(storage, **fields):
    integration = make_integration(**fields)
    await storage.save_integration(integration)
    customer = Customer(user_id="user-1", name="Alice", address="1 High Street")
    await storage.save_customer(customer)
    job = Job(
        user_id="user-1",
        customer_id=customer.id,
        service_name="Brake service",
        booking_datetime=at(10),
        notes="Bring the spare key",
        vehicle="Blue Golf"
    )
    await storage.save_job(job)
    return integration, job


def test_description_round_trip_keeps_notes():
    description = build_description("Bring the spare key", "Alice", "Blue Golf")

    assert description == "Bring the spare key\nCustomer: Alice\nCar: Blue Golf"
    assert strip_generated_lines(description) == "Bring the spare key"
    assert strip_generated_lines("Customer: Alice") is None


@pytest.mark.asyncio
async def test_first_push_creates_event_and_link(storage, controller, calendar):
    integration, job = await setup_job(storage)

    event = await controller.push_job("user-1", job.id)

    assert calendar.created == 1
    stored = calendar.events[event.provider_id]
    assert stored["summary"] == "Brake service - Alice"
    assert stored["location"] == "1 High Street"
    assert stored["extendedProperties"]["private"]["crmJobId"] == job.id

    link = await storage.get_link(integration.id, EntityType.JOB, job.id)
    assert link.status == LinkStatus.LINKED
    assert link.external_id == event.provider_id
    assert (await storage.get_integration(integration.id)).last_sync_at is not None


@pytest.mark.asyncio
async def test_repeated_push_updates_same_event(storage, controller, calendar):
    integration, job = await setup_job(storage)

    first = await controller.push_job("user-1", job.id)
    second = await controller.push_job("user-1", job.id)

    assert second.provider_id == first.provider_id
    assert calendar.created == 1
    assert calendar.updated == 1
    assert len(calendar.events) == 1
    assert len(await storage.list_links(integration.id, EntityType.JOB)) == 1


@pytest.mark.asyncio
async def test_interrupted_push_recovers_event_by_marker(storage, controller, calendar):
    integration, job = await setup_job(storage)
    # A previous push created the event but crashed before recording it
    await storage.claim_link(integration.id, EntityType.JOB, job.id)
    calendar.add_event("orphan", at(10), at(12), summary="Brake service - Alice", job_id=job.id)

    event = await controller.push_job("user-1", job.id)

    assert event.provider_id == "orphan"
    assert calendar.created == 0
    link = await storage.get_link(integration.id, EntityType.JOB, job.id)
    assert link.status == LinkStatus.LINKED
    assert link.external_id == "orphan"


@pytest.mark.asyncio
async def test_push_recreates_event_deleted_in_calendar(storage, controller, calendar):
    integration, job = await setup_job(storage)
    first = await controller.push_job("user-1", job.id)
    del calendar.events[first.provider_id]

    second = await controller.push_job("user-1", job.id)

    assert second.provider_id != first.provider_id
    link = await storage.get_link(integration.id, EntityType.JOB, job.id)
    assert link.external_id == second.provider_id
    assert await storage.get_link_by_external_id(integration.id, first.provider_id) is None


@pytest.mark.asyncio
async def test_push_requires_integration_and_owned_job(storage, controller):
    integration, job = await setup_job(storage)

    with pytest.raises(EntityNotFound):
        await controller.push_job("user-1", "missing-job")
    with pytest.raises(IntegrationNotFound):
        await controller.push_job("user-2", job.id)


@pytest.mark.asyncio
async def test_delete_job_removes_event_and_link(storage, controller, calendar):
    integration, job = await setup_job(storage)
    event = await controller.push_job("user-1", job.id)

    deleted = await controller.delete_job("user-1", job.id)

    assert deleted is True
    assert event.provider_id not in calendar.events
    assert await storage.get_job(job.id) is None
    assert await storage.links_for_entity(EntityType.JOB, job.id) == []


@pytest.mark.asyncio
async def test_delete_job_keeps_event_when_asked(storage, controller, calendar):
    integration, job = await setup_job(storage)
    event = await controller.push_job("user-1", job.id)

    deleted = await controller.delete_job("user-1", job.id, delete_from_calendar=False)

    assert deleted is False
    assert event.provider_id in calendar.events
    assert await storage.list_links(integration.id) == []


@pytest.mark.asyncio
async def test_external_events_exclude_job_mirrors(storage, controller, calendar):
    integration, job = await setup_job(storage)
    await controller.push_job("user-1", job.id)
    calendar.add_event("dentist", at(14), at(15))
    calendar.add_event("unlinked-mirror", at(16), at(17), job_id="other-job")

    events = await controller.list_external_events("user-1", at(0), at(23))

    assert [event.provider_id for event in events] == ["dentist"]


@pytest.mark.asyncio
async def test_pull_merges_calendar_edits_into_job(storage, controller, calendar):
    integration, job = await setup_job(storage, two_way_sync_enabled=True)
    event = await controller.push_job("user-1", job.id)

    moved = calendar.events[event.provider_id]
    moved["start"] = {"dateTime": at(13).isoformat()}
    moved["end"] = {"dateTime": at(15).isoformat()}
    moved["description"] = "Customer wants a call first\nCustomer: Alice\nCar: Blue Golf"

    result = await controller.pull_calendar_changes(integration)

    assert result.updated == 1
    updated = await storage.get_job(job.id)
    assert updated.booking_datetime == at(13)
    assert updated.notes == "Customer wants a call first"
    assert updated.last_synced_from_provider is not None

    # Nothing new on the second pull
    again = await controller.pull_calendar_changes(integration)
    assert again.updated == 0
    assert again.skipped == 1


@pytest.mark.asyncio
async def test_pull_is_disabled_without_two_way_sync(storage, controller, calendar):
    integration, job = await setup_job(storage)
    event = await controller.push_job("user-1", job.id)
    calendar.events[event.provider_id]["start"] = {"dateTime": at(13).isoformat()}

    result = await controller.pull_calendar_changes(integration)

    assert result.updated == 0
    assert (await storage.get_job(job.id)).booking_datetime == at(10)


def test_newer_wins_keeps_recent_crm_edit():
    job = Job(user_id="user-1", booking_datetime=at(10), notes="CRM notes", updated_at=utcnow())
    event = CalendarEvent(
        id="google_e1",
        provider_id="e1",
        start_time=at(13),
        end_time=at(15),
        description="Calendar notes",
        updated_at=utcnow() - timedelta(hours=1)
    )

    assert merge_event_into_job(job, event, ConflictResolution.NEWER_WINS) is False
    assert merge_event_into_job(job, event, ConflictResolution.PROVIDER_WINS) is True
    assert job.booking_datetime == at(13)
    assert job.notes == "Calendar notes"


def test_all_day_event_does_not_move_job():
    job = Job(user_id="user-1", booking_datetime=at(10), notes="Same")
    event = CalendarEvent(
        id="google_e1", provider_id="e1", start_time=at(0), end_time=at(0, days=4),
        all_day=True, description="Same"
    )

    assert merge_event_into_job(job, event, ConflictResolution.PROVIDER_WINS) is False
    assert job.booking_datetime == at(10)
