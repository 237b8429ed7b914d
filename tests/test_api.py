import json

import pytest
from httpx import ASGITransport, AsyncClient

from glassops.config import settings
from glassops.database import get_db
from glassops.dependencies.rate_limit import get_rate_limiter
from glassops.dependencies.services import get_dispatcher, get_job_client, get_sms_gateway
from glassops.main import app
from glassops.routes.intake import extract_inbound_sms, generate_signature

from conftest import VALID_FORM, FakeJobClient, erp_down


class FakeLimiter:
    def __init__(self, allowed=True):
        self.allowed = allowed
        self.calls = []

    async def is_allowed(self, scope, client_id):
        self.calls.append((scope, client_id))
        return (True, 0) if self.allowed else (False, 42)


@pytest.fixture
def limiter():
    return FakeLimiter()


@pytest.fixture
def erp():
    return FakeJobClient()


@pytest.fixture
async def client(session_factory, dispatcher, erp, sms, limiter):
    async def override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_job_client] = lambda: erp
    app.dependency_overrides[get_sms_gateway] = lambda: sms
    app.dependency_overrides[get_rate_limiter] = lambda: limiter

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


async def post_form(client, form=None, **kwargs):
    return await client.post("/api/webhooks/intake", json=form or dict(VALID_FORM), **kwargs)


# ----------------------------------------------------------------------
# Intake
# ----------------------------------------------------------------------

async def test_intake_acknowledges_and_dispatches(client, dispatcher, limiter):
    response = await post_form(client)

    assert response.status_code == 202
    body = response.json()
    assert body["success"] is True
    assert dispatcher.calls == [(body["transactionId"], 0)]
    assert limiter.calls[0][0] == "intake"

    detail = await client.get(f"/api/transactions/{body['transactionId']}")
    assert detail.json()["status"] == "pending"
    assert detail.json()["customerName"] == "Jane Doe"


@pytest.mark.parametrize("body", [b"", b"[]", b"{}", b"not json"])
async def test_intake_rejects_bad_bodies(client, body):
    response = await client.post(
        "/api/webhooks/intake",
        content=body,
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
    error = response.json()
    assert error["success"] is False
    assert error["error"]["code"] == "VALIDATION_ERROR"


async def test_intake_rate_limited(client, limiter, dispatcher):
    limiter.allowed = False

    response = await post_form(client)

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "42"
    assert dispatcher.calls == []


async def test_intake_signature_required_when_secret_set(client, monkeypatch):
    monkeypatch.setattr(settings, "INTAKE_WEBHOOK_SECRET", "s3cret")
    body = json.dumps(VALID_FORM).encode()
    headers = {"Content-Type": "application/json"}

    missing = await client.post("/api/webhooks/intake", content=body, headers=headers)
    wrong = await client.post(
        "/api/webhooks/intake", content=body, headers={**headers, "X-Webhook-Signature": "deadbeef"}
    )
    signed = await client.post(
        "/api/webhooks/intake",
        content=body,
        headers={**headers, "X-Webhook-Signature": f"sha256={generate_signature(body, 's3cret')}"},
    )

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert signed.status_code == 202


def test_extract_inbound_sms_shapes():
    envelope = {
        "type": "message.received",
        "data": {"object": {"from": "+17605550101", "content": "ACCEPT JOB-1"}},
    }
    assert extract_inbound_sms(envelope) == ("+17605550101", "ACCEPT JOB-1")
    assert extract_inbound_sms({"from": "7605550101", "message": "REJECT JOB-2"}) == ("7605550101", "REJECT JOB-2")
    assert extract_inbound_sms({"type": "message.delivered", "data": {"object": {}}}) is None
    assert extract_inbound_sms({"from": "7605550101"}) is None


# ----------------------------------------------------------------------
# Transactions and retry queue
# ----------------------------------------------------------------------

async def test_unknown_transaction_is_404(client):
    response = await client.get("/api/transactions/999")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


async def test_manual_retry_endpoint(client, session_factory, dispatcher):
    from glassops.services.transaction_service import TransactionStateMachine

    transaction_id = (await post_form(client)).json()["transactionId"]
    async with session_factory() as session:
        machine = TransactionStateMachine(session, job_client=FakeJobClient([erp_down()]), dispatch=dispatcher)
        await machine.process(transaction_id)

    detail = (await client.get(f"/api/transactions/{transaction_id}")).json()
    assert detail["status"] == "failed"
    assert detail["retry"]["attempts"] == 0

    response = await client.post(f"/api/transactions/{transaction_id}/retry")

    assert response.status_code == 200
    body = response.json()
    assert body["enqueued"] is True
    assert body["transaction"]["status"] == "pending"
    assert body["transaction"]["retryCount"] == 1
    assert "retry" not in (await client.get(f"/api/transactions/{transaction_id}")).json()

    again = await client.post(f"/api/transactions/{transaction_id}/retry")
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "INVALID_TRANSITION"


async def test_list_and_archive_transactions(client):
    first = (await post_form(client)).json()["transactionId"]
    second = (await post_form(client)).json()["transactionId"]

    archived = await client.post(f"/api/transactions/{first}/archive")
    assert archived.json()["transaction"]["archivedAt"] is not None

    listing = (await client.get("/api/transactions")).json()
    assert [t["id"] for t in listing["transactions"]] == [second]
    assert listing["total"] == 1

    everything = (await client.get("/api/transactions", params={"includeArchived": "true"})).json()
    assert everything["total"] == 2


async def test_retry_queue_endpoints(client, session_factory):
    from glassops.services.retry_queue import RetryQueueService

    async with session_factory() as session:
        service = RetryQueueService(session)
        await service.enqueue("process_transaction", transaction_id=77)
        [entry] = await service.claim_due()
        await service.fail(entry, "ERP unreachable", retryable=False)

    dead = (await client.get("/api/retry-queue", params={"deadLetter": "true"})).json()["entries"]
    assert [e["transactionId"] for e in dead] == [77]
    assert (await client.get("/api/retry-queue/stats")).json()["deadLetter"] == 1

    requeued = await client.post(f"/api/retry-queue/{dead[0]['id']}/requeue")
    assert requeued.json()["entry"]["isDeadLetter"] is False
    assert requeued.json()["entry"]["attempts"] == 0

    stats = (await client.get("/api/retry-queue/stats")).json()
    assert stats == {"active": 1, "due": 1, "inFlight": 0, "deadLetter": 0}


# ----------------------------------------------------------------------
# Subcontractors and job requests
# ----------------------------------------------------------------------

SUBCONTRACTOR = {
    "name": "Coastal Glass",
    "email": "coastal@example.com",
    "phone": "(760) 555-0101",
    "serviceAreas": ["92054"],
    "specialties": ["windshield"],
    "rating": 4.7,
    "maxJobsPerDay": 2,
}


async def test_subcontractor_crud(client):
    created = await client.post("/api/subcontractors", json=SUBCONTRACTOR)
    assert created.status_code == 201
    sub_id = created.json()["id"]
    assert created.json()["serviceAreas"] == ["92054"]

    updated = await client.put(f"/api/subcontractors/{sub_id}", json={"rating": 4.1})
    assert updated.json()["rating"] == 4.1
    assert updated.json()["name"] == "Coastal Glass"

    availability = await client.post(
        f"/api/subcontractors/{sub_id}/availability",
        json={"date": "2026-11-02", "timeSlots": ["09:00"], "maxJobs": 9},
    )
    assert availability.json()["maxJobs"] == 2

    days = (await client.get(f"/api/subcontractors/{sub_id}/availability")).json()["availability"]
    assert [d["date"] for d in days] == ["2026-11-02"]

    removed = await client.delete(f"/api/subcontractors/{sub_id}")
    assert removed.json()["subcontractor"]["isActive"] is False
    active = (await client.get("/api/subcontractors", params={"activeOnly": "true"})).json()
    assert active["subcontractors"] == []

    approved = await client.put(f"/api/subcontractors/{sub_id}/approve")
    assert approved.json()["isActive"] is True


async def test_subcontractor_validation_and_404(client):
    invalid = await client.post("/api/subcontractors", json={**SUBCONTRACTOR, "rating": 9})
    assert invalid.status_code == 422

    missing = await client.get("/api/subcontractors/404")
    assert missing.status_code == 404
    assert missing.json() == {
        "success": False,
        "error": {"code": "NOT_FOUND", "message": "Subcontractor 404 not found", "details": None},
    }


async def test_job_request_flow(client, sms):
    sub_id = (await client.post("/api/subcontractors", json=SUBCONTRACTOR)).json()["id"]
    await client.post(
        f"/api/subcontractors/{sub_id}/availability",
        json={"date": "2026-11-02", "timeSlots": ["09:00", "13:00"]},
    )

    created = await client.post(
        "/api/job-requests",
        json={"customerLocation": "12 Palm Ave, Oceanside, CA 92054", "preferredDate": "2026-11-02"},
    )
    assert created.status_code == 201
    body = created.json()
    job_id = body["jobRequestId"]
    assert body["notified"] == 1
    assert body["recommendedSlot"]["timeSlot"] == "09:00"
    assert len(body["availableSlots"]) == 2
    assert sms.sent[0][0] == "(760) 555-0101"

    accepted = await client.post(
        "/api/job-requests/responses",
        json={"jobRequestId": job_id, "subcontractorId": sub_id, "response": "available"},
    )
    assert accepted.json()["jobRequest"]["status"] == "assigned"
    assert accepted.json()["jobRequest"]["assignedSubcontractorId"] == sub_id

    summary = (await client.get(f"/api/job-requests/{job_id}")).json()
    assert summary["responseCount"] == 1
    assert summary["availableCount"] == 1

    cancelled = await client.post(f"/api/job-requests/{job_id}/cancel")
    assert cancelled.json()["jobRequest"]["status"] == "cancelled"
    days = (await client.get(f"/api/subcontractors/{sub_id}/availability")).json()["availability"]
    assert days[0]["currentJobs"] == 0


async def test_sms_reply_webhook(client, sms):
    sub_id = (await client.post("/api/subcontractors", json=SUBCONTRACTOR)).json()["id"]
    job_id = (await client.post(
        "/api/job-requests",
        json={"customerLocation": "Oceanside 92054", "preferredDate": "2026-11-02"},
    )).json()["jobRequestId"]

    response = await client.post(
        "/api/webhooks/sms-reply",
        json={"type": "message.received", "data": {"object": {"from": "+17605550101", "content": f"ACCEPT JOB-{job_id}"}}},
    )

    assert response.status_code == 200
    assert response.json()["assigned"] is True
    assert response.json()["subcontractorId"] == sub_id

    ignored = await client.post("/api/webhooks/sms-reply", json={"type": "message.delivered", "data": {}})
    assert ignored.json() == {"success": True, "message": "Event acknowledged"}


# ----------------------------------------------------------------------
# Notifications
# ----------------------------------------------------------------------

async def test_notifications_and_activity_logs(client, session_factory):
    from glassops.models.activity import NotificationSeverity
    from glassops.services.activity_service import ActivityService

    async with session_factory() as session:
        activity = ActivityService(session)
        notification = await activity.notify(
            type="dead_letter",
            severity=NotificationSeverity.CRITICAL,
            title="Retry exhausted",
            message="needs attention",
            transaction_id=3,
        )
        await activity.log("retry_deadletter", "gave up", transaction_id=3)

    unresolved = (await client.get("/api/notifications/unresolved")).json()
    assert unresolved["count"] == 1
    assert unresolved["notifications"][0]["severity"] == "critical"

    resolved = await client.post(
        f"/api/notifications/{notification.id}/resolve", json={"resolvedBy": "ops@example.com"}
    )
    assert resolved.json()["notification"]["resolvedBy"] == "ops@example.com"
    assert (await client.get("/api/notifications/unresolved")).json()["count"] == 0

    logs = (await client.get("/api/activity-logs", params={"type": "retry_"})).json()["logs"]
    assert [entry["type"] for entry in logs] == ["retry_deadletter"]

    missing = await client.post("/api/notifications/nope/resolve")
    assert missing.status_code == 404


async def test_root_endpoint(client):
    response = await client.get("/", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 200
    assert response.json()["status"] == "running"
    assert response.headers["X-Request-ID"] == "req-123"
