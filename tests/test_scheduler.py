import asyncio
import datetime

import pytest

from glassops.exceptions import InvalidTransitionError, ValidationError
from glassops.models.activity import NotificationSeverity
from glassops.models.base import utcnow
from glassops.models.subcontractor import JobRequest, JobRequestStatus, ResponseType, SubcontractorResponse
from glassops.models.transaction import FulfillmentStatus
from glassops.services.scheduler import (
    AvailableSlot,
    DispatchScheduler,
    KeyedLock,
    SchedulingRequest,
    build_dispatch_message,
    estimate_distance,
    estimate_duration,
    estimate_price,
    parse_sms_reply,
    rank_slots,
    score_slot,
    select_recommended,
)

from conftest import VALID_FORM, FakeSms

DAY = datetime.date(2026, 11, 2)
LOCATION = "12 Palm Ave, Oceanside, CA 92054"


async def add_sub(directory, name, phone, **fields):
    fields.setdefault("service_areas", ["92054"])
    fields.setdefault("specialties", ["windshield"])
    return await directory.create(name=name, email=f"{name.split()[0].lower()}@example.com", phone=phone, **fields)


async def open_job(scheduler, **fields):
    fields.setdefault("preferred_date", DAY)
    result = await scheduler.create_job_request(SchedulingRequest(customer_location=LOCATION, **fields))
    return result.job_request_id


def make_slot(sub_id, rating, distance, time_slot="13:00"):
    return AvailableSlot(
        subcontractor_id=sub_id,
        subcontractor_name=f"sub-{sub_id}",
        available_date=DAY,
        time_slot=time_slot,
        rating=rating,
        estimated_price=35000,
        distance=distance,
    )


# ----------------------------------------------------------------------
# SMS parsing
# ----------------------------------------------------------------------

def test_parse_accept():
    reply = parse_sms_reply("ACCEPT JOB-12")
    assert reply.job_request_id == 12
    assert reply.response == ResponseType.AVAILABLE
    assert reply.proposed_text is None


def test_parse_reject_is_case_insensitive():
    reply = parse_sms_reply("reject job-7 too far")
    assert reply.job_request_id == 7
    assert reply.response == ResponseType.DECLINED


def test_parse_reschedule_with_calendar_date():
    reply = parse_sms_reply("RESCHEDULE JOB-3 10/24/2026 2:00 PM")

    assert reply.response == ResponseType.COUNTER_OFFER
    assert reply.proposed_text == "10/24/2026 2:00 PM"
    assert reply.proposed_date == datetime.datetime(2026, 10, 24, 14, 0)


def test_parse_tomorrow_is_relative_to_today():
    reply = parse_sms_reply("Need a different time for JOB-4, tomorrow 9:30", today=datetime.date(2026, 10, 19))

    assert reply.response == ResponseType.COUNTER_OFFER
    assert reply.proposed_date == datetime.datetime(2026, 10, 20, 9, 30)


def test_parse_weekday_keeps_text_only():
    reply = parse_sms_reply("RESCHEDULE JOB-5 friday 3:00 PM")

    assert reply.proposed_text == "friday 3:00 PM"
    assert reply.proposed_date is None


def test_unclear_reply_counts_as_decline():
    reply = parse_sms_reply("who is this?")
    assert reply.job_request_id is None
    assert reply.response == ResponseType.DECLINED


# ----------------------------------------------------------------------
# Scoring
# ----------------------------------------------------------------------

@pytest.mark.parametrize(
    "customer_zip, areas, expected",
    [
        ("92054", ["92054"], 2.0),
        ("92054", ["92500"], 5.0),
        ("92054", ["10001"], 25.0),
        ("92054", ["north county", "92054"], 2.0),
        ("00000", [], 25.0),
        ("9205A", ["92054"], 25.0),
    ],
)
def test_estimate_distance(customer_zip, areas, expected):
    assert estimate_distance(customer_zip, areas) == expected


def test_estimates_by_glass_type():
    assert estimate_duration("windshield") == 180
    assert estimate_duration("Side_Window") == 90
    assert estimate_duration("sunroof") == 120
    assert estimate_price("rear_glass") == 25000
    assert estimate_price(None) == 20000


def test_score_slot_rewards_rating_proximity_and_preferred_time():
    near = make_slot(1, 4.0, 2.0, time_slot="09:00")
    far = make_slot(2, 4.0, 25.0, time_slot="13:00")

    assert score_slot(near, "09:00") == pytest.approx(4.0 * 0.4 + 48 * 0.004 + 0.2)
    assert score_slot(far, "09:00") == pytest.approx(4.0 * 0.4 + 25 * 0.004)


def test_select_recommended_keeps_first_on_ties():
    first = make_slot(1, 4.0, 5.0)
    second = make_slot(2, 4.0, 5.0)
    first.score = second.score = 1.0

    assert select_recommended([first, second]) is first
    assert select_recommended([]) is None


def test_rank_slots_orders_by_rating_then_distance():
    slots = [make_slot(1, 4.0, 2.0), make_slot(2, 4.9, 25.0), make_slot(3, 4.9, 5.0)]

    assert [slot.subcontractor_id for slot in rank_slots(slots)] == [3, 2, 1]


def test_dispatch_message_lists_reply_commands():
    job_request = JobRequest(
        id=42,
        customer_location=LOCATION,
        service_type="windshield",
        preferred_date=DAY,
        preferred_time_slot="09:00",
        estimated_duration=180,
    )

    message = build_dispatch_message(job_request, "Jane Doe", "2019 Honda Civic")

    assert message.startswith("NEW JOB: JOB-42\n")
    assert "Preferred: 2026-11-02 at 09:00" in message
    assert "Duration: ~3 hours" in message
    assert '"ACCEPT JOB-42"' in message


# ----------------------------------------------------------------------
# Job requests
# ----------------------------------------------------------------------

async def test_create_job_request_requires_location(scheduler):
    with pytest.raises(ValidationError):
        await scheduler.create_job_request(SchedulingRequest(customer_location="  "))


async def test_create_job_request_ranks_slots_and_notifies(db, directory, activity, machine):
    best = await add_sub(directory, "Coastal Glass", "760-555-0101", rating=4.8)
    flaky = await add_sub(directory, "North Glass", "760-555-0102", rating=4.2, service_areas=["92010"])
    await add_sub(directory, "Desert Glass", "602-555-0103", service_areas=["85001"])
    await directory.set_availability(best.id, DAY, time_slots=["09:00", "13:00"])
    await directory.set_availability(flaky.id, DAY, time_slots=["09:00"])
    sms = FakeSms(failing={"760-555-0102"})
    scheduler = DispatchScheduler(db, sms=sms, activity=activity, directory=directory, state_machine=machine)

    result = await scheduler.create_job_request(
        SchedulingRequest(customer_location=LOCATION, preferred_date=DAY, customer_name="Jane Doe")
    )

    assert [(s.subcontractor_id, s.time_slot) for s in result.available_slots] == [
        (best.id, "09:00"),
        (best.id, "13:00"),
        (flaky.id, "09:00"),
    ]
    assert result.recommended_slot.subcontractor_id == best.id
    assert result.recommended_slot.time_slot == "09:00"
    assert result.available_slots[2].distance == 5.0
    assert result.estimated_response_time == 24
    assert result.notified == 1
    assert [to for to, _ in sms.sent] == ["760-555-0101"]
    assert f"NEW JOB: JOB-{result.job_request_id}" in sms.sent[0][1]

    job_request = await scheduler.get_job_request(result.job_request_id)
    assert job_request.status == JobRequestStatus.PENDING_CONTRACTOR
    assert job_request.estimated_duration == 180

    types = [entry.type for entry in await activity.recent_activity(type_prefix="subcontractor_")]
    assert sorted(types) == ["subcontractor_notified", "subcontractor_notify_failed"]

    as_dict = result.to_dict()
    assert as_dict["jobRequestId"] == result.job_request_id
    assert as_dict["recommendedSlot"]["availableDate"] == "2026-11-02"


async def test_higher_rating_outweighs_shorter_distance(directory, scheduler):
    top_rated = await add_sub(directory, "Coastal Glass", "760-555-0101", rating=5.0, service_areas=["92010"])
    nearby = await add_sub(directory, "Palm Glass", "760-555-0102", rating=4.0)
    await directory.set_availability(top_rated.id, DAY, time_slots=["09:00"])
    await directory.set_availability(nearby.id, DAY, time_slots=["09:00"])

    result = await scheduler.create_job_request(SchedulingRequest(customer_location=LOCATION, preferred_date=DAY))

    assert [(s.subcontractor_id, s.distance) for s in result.available_slots] == [
        (top_rated.id, 5.0),
        (nearby.id, 2.0),
    ]
    assert [s.score for s in result.available_slots] == [
        pytest.approx(5.0 * 0.4 + 45 * 0.004 + 0.2),
        pytest.approx(4.0 * 0.4 + 48 * 0.004 + 0.2),
    ]
    assert result.recommended_slot.subcontractor_id == top_rated.id
    assert rank_slots(list(reversed(result.available_slots))) == result.available_slots


async def test_late_accept_reserves_the_day_the_slots_were_offered_for(monkeypatch, directory, scheduler):
    sub = await add_sub(directory, "Coastal Glass", "760-555-0101")
    await directory.set_availability(sub.id, DAY, time_slots=["09:00"])
    created = datetime.datetime.combine(DAY, datetime.time(23, 50))
    monkeypatch.setattr("glassops.services.scheduler.utcnow", lambda: created)

    result = await scheduler.create_job_request(SchedulingRequest(customer_location=LOCATION))
    assert [slot.available_date for slot in result.available_slots] == [DAY]

    # the accept arrives after midnight
    monkeypatch.setattr("glassops.services.scheduler.utcnow", lambda: created + datetime.timedelta(minutes=20))
    _, job_request = await scheduler.record_response(result.job_request_id, sub.id, ResponseType.AVAILABLE)

    assert job_request.target_date == DAY
    assert job_request.assigned_date == DAY
    assert (await directory.get_availability(sub.id, DAY)).current_jobs == 1
    assert await directory.get_availability(sub.id, DAY + datetime.timedelta(days=1)) is None

    await scheduler.cancel_job_request(result.job_request_id)
    assert (await directory.get_availability(sub.id, DAY)).current_jobs == 0


async def test_fully_booked_days_offer_no_slots(db, directory, scheduler):
    sub = await add_sub(directory, "Coastal Glass", "760-555-0101", max_jobs_per_day=1)
    await directory.set_availability(sub.id, DAY)
    await directory.reserve_slot(sub.id, DAY)
    await db.commit()

    result = await scheduler.create_job_request(SchedulingRequest(customer_location=LOCATION, preferred_date=DAY))

    assert result.available_slots == []
    assert result.recommended_slot is None
    assert result.notified == 1


async def test_first_available_reply_wins(directory, scheduler):
    first = await add_sub(directory, "Coastal Glass", "760-555-0101")
    second = await add_sub(directory, "North Glass", "760-555-0102")
    job_id = await open_job(scheduler)

    _, job_request = await scheduler.record_response(job_id, first.id, ResponseType.AVAILABLE)
    assert job_request.status == JobRequestStatus.ASSIGNED
    assert job_request.assigned_subcontractor_id == first.id
    assert job_request.assigned_date == DAY

    _, job_request = await scheduler.record_response(job_id, second.id, "available")
    assert job_request.assigned_subcontractor_id == first.id

    assert (await directory.get_availability(first.id, DAY)).current_jobs == 1
    assert await directory.get_availability(second.id, DAY) is None


async def test_declines_do_not_assign(directory, scheduler):
    sub = await add_sub(directory, "Coastal Glass", "760-555-0101")
    job_id = await open_job(scheduler)

    _, job_request = await scheduler.record_response(job_id, sub.id, ResponseType.DECLINED)

    assert job_request.status == JobRequestStatus.PENDING_CONTRACTOR
    assert job_request.assigned_subcontractor_id is None


async def test_earlier_reply_recorded_late_takes_over(directory, scheduler, activity):
    early = await add_sub(directory, "Coastal Glass", "760-555-0101")
    late = await add_sub(directory, "North Glass", "760-555-0102")
    job_id = await open_job(scheduler)

    await scheduler.record_response(job_id, late.id, ResponseType.AVAILABLE)
    _, job_request = await scheduler.record_response(
        job_id,
        early.id,
        ResponseType.AVAILABLE,
        responded_at=utcnow() - datetime.timedelta(minutes=5),
    )

    assert job_request.assigned_subcontractor_id == early.id
    assert (await directory.get_availability(early.id, DAY)).current_jobs == 1
    assert (await directory.get_availability(late.id, DAY)).current_jobs == 0
    assert len(await activity.recent_activity(type_prefix="job_reassigned")) == 1


async def test_capacity_is_never_overbooked(directory, scheduler, activity, publisher):
    busy = await add_sub(directory, "Coastal Glass", "760-555-0101", max_jobs_per_day=1)
    backup = await add_sub(directory, "North Glass", "760-555-0102")
    first_job = await open_job(scheduler)
    second_job = await open_job(scheduler)

    await scheduler.record_response(first_job, busy.id, ResponseType.AVAILABLE)
    _, job_request = await scheduler.record_response(second_job, busy.id, ResponseType.AVAILABLE)

    assert job_request.status == JobRequestStatus.PENDING_CONTRACTOR
    assert (await directory.get_availability(busy.id, DAY)).current_jobs == 1
    notifications = await activity.unresolved_notifications()
    assert [(n.type, n.severity) for n in notifications] == [
        ("capacity_exhausted", NotificationSeverity.WARNING)
    ]
    assert publisher.frames[-1]["notification"]["type"] == "capacity_exhausted"

    # the next acceptor with room still gets the job
    _, job_request = await scheduler.record_response(second_job, backup.id, ResponseType.AVAILABLE)
    assert job_request.assigned_subcontractor_id == backup.id


async def test_concurrent_accepts_assign_once(db, directory, scheduler):
    subs = [await add_sub(directory, f"Sub{i} Glass", f"760-555-010{i}") for i in range(3)]
    job_id = await open_job(scheduler)
    stamp = utcnow()
    for offset, sub in enumerate(subs):
        db.add(SubcontractorResponse(
            job_request_id=job_id,
            subcontractor_id=sub.id,
            response=ResponseType.AVAILABLE,
            responded_at=stamp + datetime.timedelta(seconds=offset),
        ))
    await db.commit()

    results = await asyncio.gather(*(scheduler.evaluate_assignment(job_id) for _ in subs))

    assert {r.assigned_subcontractor_id for r in results} == {subs[0].id}
    total = 0
    for sub in subs:
        availability = await directory.get_availability(sub.id, DAY)
        total += availability.current_jobs if availability else 0
    assert total == 1


async def test_transaction_follows_dispatch(machine, directory, scheduler):
    sub = await add_sub(directory, "Coastal Glass", "760-555-0101")
    transaction = await machine.submit(dict(VALID_FORM, **{"preferred-date": DAY.isoformat()}))
    await machine.process(transaction.id)

    result = await scheduler.create_job_request_for_transaction(transaction.id)

    transaction = await machine.get(transaction.id)
    assert transaction.fulfillment_status == FulfillmentStatus.PENDING_CONTRACTOR
    assert transaction.job_request_id == result.job_request_id

    job_request = await scheduler.get_job_request(result.job_request_id)
    assert job_request.transaction_id == transaction.id
    assert job_request.preferred_date == DAY
    assert job_request.vin == "1HGCM82633A004352"

    await scheduler.record_response(result.job_request_id, sub.id, ResponseType.AVAILABLE)

    transaction = await machine.get(transaction.id)
    assert transaction.fulfillment_status == FulfillmentStatus.ASSIGNED
    assert transaction.assigned_subcontractor_id == sub.id
    assert transaction.status_history[-1]["status"] == "success"


async def test_process_sms_reply_assigns_and_confirms(directory, scheduler, sms):
    sub = await add_sub(directory, "Coastal Glass", "(760) 555-0101")
    job_id = await open_job(scheduler)
    sms.sent.clear()

    result = await scheduler.process_sms_reply("+17605550101", f"Accept JOB-{job_id}")

    assert result == {
        "success": True,
        "jobRequestId": job_id,
        "subcontractorId": sub.id,
        "response": "available",
        "proposedDateTime": None,
        "jobStatus": "assigned",
        "assigned": True,
    }
    assert sms.sent == [("+17605550101", f"Confirmed: You've ACCEPTED JOB-{job_id}. You'll receive appointment details shortly.")]


async def test_process_sms_reply_stores_counter_offer(directory, scheduler):
    await add_sub(directory, "Coastal Glass", "(760) 555-0101")
    job_id = await open_job(scheduler)

    result = await scheduler.process_sms_reply("7605550101", f"RESCHEDULE JOB-{job_id} 11/03/2026 1:00 PM")

    assert result["response"] == "counter_offer"
    assert result["jobStatus"] == "pending_contractor"
    status = await scheduler.get_job_request_status(job_id)
    assert status["responseCount"] == 1
    assert status["availableCount"] == 0
    reply = status["responses"][0]
    assert reply.proposed_date == datetime.datetime(2026, 11, 3, 13, 0)
    assert reply.available_time_slots == ["11/03/2026 1:00 PM"]


async def test_process_sms_reply_reports_unmatched_messages(directory, scheduler):
    await add_sub(directory, "Coastal Glass", "(760) 555-0101")

    assert await scheduler.process_sms_reply("7605550101", "ok sounds good") == {
        "success": False,
        "reason": "no_job_id",
    }
    assert await scheduler.process_sms_reply("6195550000", "ACCEPT JOB-1") == {
        "success": False,
        "reason": "unknown_subcontractor",
    }


async def test_confirmation_failure_does_not_lose_the_reply(db, directory, activity, machine):
    sub = await add_sub(directory, "Coastal Glass", "(760) 555-0101")
    sms = FakeSms(failing={"7605550101"})
    scheduler = DispatchScheduler(db, sms=sms, activity=activity, directory=directory, state_machine=machine)
    job_id = await open_job(scheduler)

    result = await scheduler.process_sms_reply("7605550101", f"ACCEPT JOB-{job_id}")

    assert result["success"] is True
    assert result["assigned"] is True
    assert (await scheduler.get_job_request(job_id)).assigned_subcontractor_id == sub.id


async def test_cancel_releases_assigned_slot(directory, scheduler):
    sub = await add_sub(directory, "Coastal Glass", "760-555-0101")
    job_id = await open_job(scheduler)
    await scheduler.record_response(job_id, sub.id, ResponseType.AVAILABLE)

    job_request = await scheduler.cancel_job_request(job_id)

    assert job_request.status == JobRequestStatus.CANCELLED
    assert (await directory.get_availability(sub.id, DAY)).current_jobs == 0
    with pytest.raises(InvalidTransitionError):
        await scheduler.cancel_job_request(job_id)


async def test_cancelled_requests_ignore_late_accepts(directory, scheduler):
    sub = await add_sub(directory, "Coastal Glass", "760-555-0101")
    job_id = await open_job(scheduler)
    await scheduler.cancel_job_request(job_id)

    _, job_request = await scheduler.record_response(job_id, sub.id, ResponseType.AVAILABLE)

    assert job_request.status == JobRequestStatus.CANCELLED
    assert job_request.assigned_subcontractor_id is None


async def test_expire_stale_job_requests(directory, scheduler):
    sub = await add_sub(directory, "Coastal Glass", "760-555-0101")
    stale = await open_job(scheduler)
    assigned = await open_job(scheduler)
    await scheduler.record_response(assigned, sub.id, ResponseType.AVAILABLE)

    assert await scheduler.expire_stale_job_requests() == 0
    later = utcnow() + datetime.timedelta(hours=25)
    assert await scheduler.expire_stale_job_requests(now=later) == 1
    assert await scheduler.expire_stale_job_requests(now=later) == 0

    assert (await scheduler.get_job_request(stale)).status == JobRequestStatus.EXPIRED
    assert (await scheduler.get_job_request(assigned)).status == JobRequestStatus.ASSIGNED


async def test_keyed_lock_serializes_same_key():
    lock = KeyedLock()
    events = []

    async def worker(name, key):
        async with lock.hold(key):
            events.append(f"{name}-in")
            await asyncio.sleep(0.01)
            events.append(f"{name}-out")

    await asyncio.gather(worker("a", 1), worker("b", 1))

    assert events in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])
    assert lock._locks == {}


async def test_keyed_lock_allows_different_keys():
    lock = KeyedLock()
    events = []

    async def worker(name, key):
        async with lock.hold(key):
            events.append(f"{name}-in")
            await asyncio.sleep(0.01)
            events.append(f"{name}-out")

    await asyncio.gather(worker("a", 1), worker("b", 2))

    assert events[:2] == ["a-in", "b-in"]
