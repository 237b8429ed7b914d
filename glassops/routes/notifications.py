"""
Notification and activity routes.

REST access to notifications and the activity log, plus the WebSocket that
streams new notifications and updates to connected dashboards.
"""
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from glassops.dependencies.services import get_activity_service
from glassops.logging_config import get_logger
from glassops.models.activity import ActivityLog
from glassops.services.activity_service import ActivityService
from glassops.services.broadcaster import broadcaster


router = APIRouter(tags=["notifications"])

log = get_logger(component="notifications_ws")


class ResolveNotificationRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    resolved_by: str | None = None


def activity_to_response(entry: ActivityLog) -> dict:
    return {
        "id": entry.id,
        "type": entry.type,
        "message": entry.message,
        "transactionId": entry.transaction_id,
        "details": entry.details,
        "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
    }


@router.get("/api/notifications", response_model=dict)
async def list_notifications(
    limit: int = Query(50, ge=1, le=500),
    activity: ActivityService = Depends(get_activity_service),
):
    notifications = await activity.recent_notifications(limit=limit)
    return {"notifications": [n.to_dict() for n in notifications]}


@router.get("/api/notifications/unresolved", response_model=dict)
async def list_unresolved_notifications(
    activity: ActivityService = Depends(get_activity_service),
):
    notifications = await activity.unresolved_notifications()
    return {"notifications": [n.to_dict() for n in notifications], "count": len(notifications)}


@router.post("/api/notifications/{notification_id}/resolve", response_model=dict)
async def resolve_notification(
    notification_id: str,
    request: ResolveNotificationRequest | None = None,
    activity: ActivityService = Depends(get_activity_service),
):
    resolved_by = request.resolved_by if request else None
    notification = await activity.resolve_notification(notification_id, resolved_by=resolved_by)
    return {"success": True, "notification": notification.to_dict()}


@router.get("/api/activity-logs", response_model=dict)
async def list_activity_logs(
    limit: int = Query(50, ge=1, le=500),
    type: str | None = Query(None, description="Type prefix, e.g. retry_"),
    transaction_id: int | None = Query(None, alias="transactionId"),
    activity: ActivityService = Depends(get_activity_service),
):
    entries = await activity.recent_activity(limit=limit, type_prefix=type, transaction_id=transaction_id)
    return {"logs": [activity_to_response(entry) for entry in entries]}


@router.websocket("/ws/notifications")
async def notifications_socket(websocket: WebSocket):
    """Stream notification frames until the client disconnects."""
    await websocket.accept()
    await websocket.send_json({"type": "connected"})
    handle = broadcaster.register(websocket, websocket.send_json)
    try:
        while True:
            # Inbound messages are ignored; receiving detects the disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        log.info("notification_socket_closed")
    finally:
        broadcaster.unregister(handle)
