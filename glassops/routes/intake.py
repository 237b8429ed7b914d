"""
Inbound webhook routes.

The intake webhook acknowledges immediately; processing happens in the
worker. The SMS reply webhook feeds subcontractor replies to the scheduler.
"""
import hashlib
import hmac
import json

from fastapi import APIRouter, Depends, HTTPException, Request, status

from glassops.config import settings
from glassops.dependencies.rate_limit import check_intake_rate_limit
from glassops.dependencies.services import get_scheduler, get_state_machine
from glassops.exceptions import ValidationError
from glassops.logging_config import get_logger
from glassops.services.scheduler import DispatchScheduler
from glassops.services.transaction_service import TransactionStateMachine


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

log = get_logger(component="intake")


def generate_signature(payload: bytes, secret: str) -> str:
    """HMAC-SHA256 of the raw request body, hex encoded."""
    return hmac.new(
        secret.encode(),
        payload,
        hashlib.sha256
    ).hexdigest()


def verify_signature(payload: bytes, signature: str | None, secret: str | None) -> None:
    """
    Check X-Webhook-Signature when a secret is configured.

    Accepts the bare hex digest or a "sha256=" prefixed one.
    """
    if not secret:
        return
    if not signature:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing webhook signature"
        )
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    if not hmac.compare_digest(signature, generate_signature(payload, secret)):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature"
        )


async def _read_json(request: Request):
    body = await request.body()
    verify_signature(body, request.headers.get("X-Webhook-Signature"), settings.INTAKE_WEBHOOK_SECRET)
    if not body.strip():
        return None
    try:
        return json.loads(body)
    except ValueError as exc:
        raise ValidationError("Request body must be valid JSON") from exc


@router.post(
    "/intake",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=dict,
    dependencies=[Depends(check_intake_rate_limit)],
)
async def receive_intake(
    request: Request,
    machine: TransactionStateMachine = Depends(get_state_machine),
):
    """
    Accept a form submission.

    The transaction is stored as pending and handed to the worker; mapping
    and external job creation happen in the background.
    """
    payload = await _read_json(request)
    transaction = await machine.submit(payload, source_type="intake")

    return {
        "success": True,
        "transactionId": transaction.id,
        "message": "Form submission received and queued for processing",
    }


def extract_inbound_sms(payload: dict) -> tuple[str, str] | None:
    """
    Pull (from, text) out of an inbound SMS webhook.

    Supports the provider event envelope ({"type": "message.received",
    "data": {"object": {...}}}) and a flat {"from", "message"} body.
    """
    if "data" in payload and isinstance(payload.get("data"), dict):
        if payload.get("type") != "message.received":
            return None
        message = payload["data"].get("object") or {}
    else:
        message = payload

    phone = message.get("from")
    text = message.get("content") or message.get("body") or message.get("message") or message.get("text")
    if not phone or not text:
        return None
    return str(phone), str(text)


@router.post("/sms-reply", response_model=dict)
async def receive_sms_reply(
    request: Request,
    scheduler: DispatchScheduler = Depends(get_scheduler),
):
    """Handle a subcontractor's SMS reply to a dispatch message."""
    payload = await _read_json(request)
    if not isinstance(payload, dict):
        raise ValidationError("SMS webhook body must be a JSON object")

    inbound = extract_inbound_sms(payload)
    if inbound is None:
        return {"success": True, "message": "Event acknowledged"}

    phone, text = inbound
    log.info("sms_reply_received", phone=phone, preview=text[:50])
    return await scheduler.process_sms_reply(phone, text)
