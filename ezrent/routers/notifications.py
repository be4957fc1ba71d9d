"""
Notifications router: GET /v1/notifications/{id}, POST /v1/notifications/{id}/retry
"""
from fastapi import APIRouter, Depends

from ezrent.middleware.auth import Actor, get_current_actor
from ezrent.models.notification import NotificationLog
from ezrent.schemas.schemas import ActorRole, NotificationResponse
from ezrent.services import notifications
from ezrent.services.errors import NotificationNotFound

router = APIRouter(prefix="/v1/notifications", tags=["Notifications"])


def _visible_to(log: NotificationLog, actor: Actor) -> None:
    if actor.role != ActorRole.admin and log.recipient_id != actor.id:
        raise NotificationNotFound(f"Notification {log.id} not found")


@router.get("/{notification_id}", response_model=NotificationResponse)
async def get_notification(notification_id: int, actor: Actor = Depends(get_current_actor)):
    log = await notifications.get_notification(notification_id)
    _visible_to(log, actor)
    return NotificationResponse.model_validate(log)


@router.post("/{notification_id}/retry", response_model=NotificationResponse)
async def retry_notification(notification_id: int, actor: Actor = Depends(get_current_actor)):
    """Re-send a failed notice; sent or in-flight notices are returned unchanged."""
    log = await notifications.get_notification(notification_id)
    _visible_to(log, actor)
    log = await notifications.retry_notification(notification_id)
    return NotificationResponse.model_validate(log)
