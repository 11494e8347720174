"""Alert notification API routes."""

from fastapi import APIRouter, Depends, Query, status

from app.api.services.notification_service import NotificationFilter
from app.core.engine import Engine, get_engine
from app.schemas.enums import Channel, NotificationPriority, NotificationStatus
from app.schemas.notification import (
    AcknowledgeRequest,
    CancelRequest,
    DeliveryReceipt,
    EscalationResponse,
    NotificationCreate,
    NotificationDetail,
    NotificationList,
    NotificationResponse,
    ReceiptResponse,
)

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


@router.get("", response_model=NotificationList)
async def list_notifications(
    status_filter: NotificationStatus | None = Query(default=None, alias="status"),
    priority: NotificationPriority | None = Query(default=None),
    channel: Channel | None = Query(default=None),
    deadline_id: str | None = Query(default=None),
    recipient_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    engine: Engine = Depends(get_engine),
):
    """List notifications, newest first.

    Args:
        status: Filter by lifecycle status
        priority: Filter by priority
        channel: Only notifications using this channel
        deadline_id: Only notifications about this deadline
        recipient_id: Only notifications for this recipient
        limit: Maximum results to return
        offset: Pagination offset
    """
    items, total = engine.notifications.list_notifications(
        NotificationFilter(
            status=status_filter,
            priority=priority.value if priority else None,
            channel=channel.value if channel else None,
            deadline_id=deadline_id,
            recipient_id=recipient_id,
            limit=limit,
            offset=offset,
        )
    )
    return NotificationList(
        items=[NotificationResponse.model_validate(n) for n in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("", response_model=list[NotificationResponse], status_code=status.HTTP_201_CREATED)
async def send_notification(spec: NotificationCreate, engine: Engine = Depends(get_engine)):
    """Compose and send a notification to every resolved recipient."""
    return await engine.notifications.send_notification(spec)


@router.post("/receipts", response_model=ReceiptResponse)
async def confirm_delivery(receipt: DeliveryReceipt, engine: Engine = Depends(get_engine)):
    """Provider delivery receipt for one channel of an attempt."""
    applied = await engine.notifications.confirm_delivery(
        receipt.attempt_id, receipt.channel.value, receipt.provider_message_id, receipt.success
    )
    return ReceiptResponse(applied=applied)


@router.get("/{notification_id}", response_model=NotificationDetail)
async def get_notification(notification_id: str, engine: Engine = Depends(get_engine)):
    return engine.notifications.get_notification(notification_id)


@router.post("/{notification_id}/resend", response_model=NotificationResponse)
async def resend_notification(notification_id: str, engine: Engine = Depends(get_engine)):
    """Retry a failed notification now."""
    return await engine.notifications.resend_notification(notification_id)


@router.post("/{notification_id}/acknowledge", response_model=NotificationResponse)
async def acknowledge_notification(
    notification_id: str,
    request: AcknowledgeRequest | None = None,
    engine: Engine = Depends(get_engine),
):
    """Record the recipient's acknowledgment."""
    response = request.response if request else None
    return await engine.notifications.acknowledge_notification(notification_id, response)


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_notification_read(notification_id: str, engine: Engine = Depends(get_engine)):
    return await engine.notifications.mark_notification_read(notification_id)


@router.post("/{notification_id}/cancel", response_model=NotificationResponse)
async def cancel_notification(
    notification_id: str,
    request: CancelRequest | None = None,
    engine: Engine = Depends(get_engine),
):
    return await engine.notifications.cancel_notification(notification_id, request.reason if request else None)


@router.post("/{notification_id}/escalate", response_model=EscalationResponse)
async def escalate_notification(notification_id: str, engine: Engine = Depends(get_engine)):
    """Escalate a notification to the next recipient tier."""
    result = await engine.notifications.escalate_notification(notification_id)
    return EscalationResponse(
        notification=NotificationResponse.model_validate(result.notification),
        successors=[NotificationResponse.model_validate(n) for n in result.successors],
        exhausted=result.exhausted,
    )
