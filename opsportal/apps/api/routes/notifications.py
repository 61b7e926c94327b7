from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.apps.api.deps import get_db, get_principal
from opsportal.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from opsportal.apps.api.response import SuccessEnvelope, success_response
from opsportal.apps.api.schemas import NotificationResponse, notification_payload
from opsportal.core.errors import NotFoundError
from opsportal.services import notifications
from opsportal.services.tenancy import Principal


router = APIRouter(prefix="/notifications", tags=["notifications"], responses=DEFAULT_ERROR_RESPONSES)


class NotificationListResponse(BaseModel):
    items: list[NotificationResponse]
    unread_count: int


class MarkAllReadResponse(BaseModel):
    updated: int


@router.get("", response_model=SuccessEnvelope[NotificationListResponse])
async def list_notifications(
    request: Request,
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Notifications are addressed to users, so every role reads its own inbox.
    rows = await notifications.list_for_user(db, user_id=principal.user_id, unread_only=unread_only, limit=limit)
    unread = await notifications.unread_count(db, user_id=principal.user_id)
    payload = NotificationListResponse(items=[notification_payload(row) for row in rows], unread_count=unread)
    return success_response(request=request, data=payload)


@router.post("/read-all", response_model=SuccessEnvelope[MarkAllReadResponse])
async def mark_all_read(
    request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    updated = await notifications.mark_all_read(db, user_id=principal.user_id)
    return success_response(request=request, data=MarkAllReadResponse(updated=updated))


@router.post("/{notification_id}/read", response_model=SuccessEnvelope[NotificationResponse])
async def mark_read(
    request: Request,
    notification_id: str,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await notifications.mark_read(db, user_id=principal.user_id, notification_id=notification_id)
    if row is None:
        raise NotFoundError("Notification not found", details={"notification_id": notification_id})
    return success_response(request=request, data=notification_payload(row))
