"""
Notification Routes
===================
Per-user notification feed and read state.
"""

from fastapi import APIRouter, HTTPException, Query

from app.models.schemas import NotificationListResponse, MarkReadRequest
from app.services.workflow import get_workflow_service

router = APIRouter()


@router.get("", response_model=NotificationListResponse)
def list_notifications(
    user_id: str,
    include_read: bool = True,
    limit: int = Query(50, ge=1, le=500),
):
    """Get notifications addressed to a user directly or through their role."""
    try:
        service = get_workflow_service().notifications
        notifications = service.get_user_notifications(user_id, limit=limit, include_read=include_read)
        return NotificationListResponse(
            notifications=notifications,
            total=len(notifications),
            unread=service.get_unread_count(user_id),
        )
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/unread-count")
def get_unread_count(user_id: str):
    """Get a user's unread notification count."""
    return {"user_id": user_id, "unread": get_workflow_service().notifications.get_unread_count(user_id)}


@router.get("/stats")
def get_notification_stats(user_id: str):
    """Get a user's notification statistics."""
    return get_workflow_service().notifications.get_notification_stats(user_id)


@router.post("/read")
def mark_read(request: MarkReadRequest):
    """Mark one or all notifications as read for a user."""
    service = get_workflow_service().notifications
    if request.all:
        return {"marked": service.mark_all_as_read(request.user_id)}
    if request.notification_id is None:
        raise HTTPException(status_code=400, detail="notification_id or all=true is required")
    if not service.mark_as_read(request.notification_id, request.user_id):
        raise HTTPException(status_code=404, detail=f"Notification {request.notification_id} not found")
    return {"marked": 1}
