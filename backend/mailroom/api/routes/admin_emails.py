"""
Admin Email API - unsubscribe registry and monthly usage.

Routes:
- GET    /admin/unsubscribes  - Paginated registry (search by address)
- POST   /admin/unsubscribes  - Add an address manually
- DELETE /admin/unsubscribes  - Re-subscribe an address
- GET    /admin/emails/usage  - Sends this month (or ``?month=YYYY-MM``) against the plan limit
"""
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from mailroom.api.dependencies import CAMPAIGN_MANAGER_ROLES, get_db, require_staff
from mailroom.lib.errors import BadRequestException, NotFoundException
from mailroom.lib.jwt import StaffSession
from mailroom.lib.logging import get_logger
from mailroom.models.unsubscribes import EmailUnsubscribe
from mailroom.services import unsubscribe_service, usage_service


logger = get_logger(__name__)
router = APIRouter(prefix="/admin", tags=["admin_emails"])


class UnsubscribeRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    reason: Optional[str] = Field(None, max_length=1000)


class ResubscribeRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)


class UnsubscribeItem(BaseModel):
    id: UUID
    email: str
    source: str
    campaign_id: Optional[UUID] = None
    reason: Optional[str] = None
    unsubscribed_at: datetime


class UnsubscribeListResponse(BaseModel):
    total: int
    limit: int
    offset: int
    unsubscribes: List[UnsubscribeItem]


class UsageResponse(BaseModel):
    month: str = Field(..., description="First day of the month (ISO date)")
    campaign_sent: int
    transactional_sent: int
    total_sent: int
    monthly_limit: int
    remaining: int
    percent_used: float


def _item(entry: EmailUnsubscribe) -> UnsubscribeItem:
    return UnsubscribeItem(
        id=entry.id,
        email=entry.email,
        source=entry.source,
        campaign_id=entry.campaign_id,
        reason=entry.reason,
        unsubscribed_at=entry.unsubscribed_at,
    )


@router.get("/unsubscribes", response_model=UnsubscribeListResponse)
async def list_unsubscribes(
    search: Optional[str] = Query(None, max_length=320),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    staff: StaffSession = Depends(require_staff()),
) -> UnsubscribeListResponse:
    entries, total = unsubscribe_service.list_unsubscribes(db, search=search, limit=limit, offset=offset)
    return UnsubscribeListResponse(
        total=total,
        limit=limit,
        offset=offset,
        unsubscribes=[_item(e) for e in entries],
    )


@router.post("/unsubscribes", response_model=UnsubscribeItem, status_code=status.HTTP_201_CREATED)
async def add_unsubscribe(
    payload: UnsubscribeRequest,
    db: Session = Depends(get_db),
    staff: StaffSession = Depends(require_staff(*CAMPAIGN_MANAGER_ROLES)),
) -> UnsubscribeItem:
    """Add an address by hand; pending recipients with it are skipped at send time."""
    if "@" not in payload.email:
        raise BadRequestException("email must be an email address", details={"email": payload.email})

    entry = unsubscribe_service.record_unsubscribe(
        db,
        payload.email,
        source="admin",
        reason=payload.reason or f"Added by {staff.user_id}",
    )
    return _item(entry)


@router.delete("/unsubscribes")
async def remove_unsubscribe(
    payload: ResubscribeRequest,
    db: Session = Depends(get_db),
    staff: StaffSession = Depends(require_staff(*CAMPAIGN_MANAGER_ROLES)),
) -> Dict[str, Any]:
    """Re-subscribe an address by removing it from the registry."""
    if not unsubscribe_service.remove_unsubscribe(db, payload.email, staff.user_id):
        raise NotFoundException("Unsubscribe entry", unsubscribe_service.normalize_email(payload.email))
    return {"success": True, "email": unsubscribe_service.normalize_email(payload.email)}


@router.get("/emails/usage", response_model=UsageResponse)
async def get_usage(
    month: Optional[str] = Query(None, pattern=r"^\d{4}-(0[1-9]|1[0-2])$", description="YYYY-MM"),
    db: Session = Depends(get_db),
    staff: StaffSession = Depends(require_staff()),
) -> UsageResponse:
    today = None
    if month:
        year, month_number = (int(part) for part in month.split("-"))
        today = date(year, month_number, 1)
    return UsageResponse(**usage_service.get_usage(db, today))
