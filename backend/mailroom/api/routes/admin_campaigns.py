"""
Admin Campaigns API - campaign CRUD, lifecycle actions and inspection.

Routes:
- POST   /admin/campaigns                  - Create a draft (builds recipients)
- GET    /admin/campaigns                  - Paginated list (status/type/search)
- GET    /admin/campaigns/{id}             - Detail with recipient stats
- PATCH  /admin/campaigns/{id}             - Update a draft (filter change rebuilds recipients)
- DELETE /admin/campaigns/{id}             - Delete a draft
- POST   /admin/campaigns/{id}/duplicate   - Copy into a new draft
- POST   /admin/campaigns/{id}/start       - draft|scheduled -> sending
- POST   /admin/campaigns/{id}/schedule    - draft -> scheduled
- POST   /admin/campaigns/{id}/pause       - sending -> paused
- POST   /admin/campaigns/{id}/resume      - paused -> sending
- POST   /admin/campaigns/{id}/cancel      - scheduled|sending|paused -> cancelled
- POST   /admin/campaigns/{id}/send-test   - One [TEST] email
- GET    /admin/campaigns/{id}/recipients  - Paginated recipients
- GET    /admin/campaigns/{id}/history     - Audit trail, newest first

Lifecycle actions answer 409 INVALID_TRANSITION when the campaign is not in a
state the action applies to.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from mailroom.api.dependencies import CAMPAIGN_MANAGER_ROLES, get_db, get_transport, require_staff
from mailroom.lib.jwt import StaffSession
from mailroom.lib.logging import get_logger
from mailroom.models.campaign_history import CampaignHistory
from mailroom.models.campaigns import Campaign, CampaignStatus, CampaignType
from mailroom.models.recipients import CampaignRecipient, RecipientStatus
from mailroom.services import history_service, recipient_service
from mailroom.services.campaign_service import CampaignService
from mailroom.services.email_transport import EmailTransport
from mailroom.services.lifecycle import CampaignLifecycle, count_by_status


logger = get_logger(__name__)
router = APIRouter(prefix="/admin/campaigns", tags=["admin_campaigns"])

manage = require_staff(*CAMPAIGN_MANAGER_ROLES)
read = require_staff()


# Request Models
class CampaignCreateRequest(BaseModel):
    """New draft campaign."""
    name: str = Field(..., min_length=1, max_length=255)
    subject: str = Field(..., min_length=1, max_length=998)
    campaign_type: CampaignType = Field(..., description="Fixed at creation")
    target_filter: Dict[str, Any] = Field(default_factory=dict, description="Audience filter for the campaign type")
    template_id: Optional[int] = Field(None, gt=0, description="Provider template id")
    html_content: Optional[str] = Field(None, description="Inline HTML (exclusive with template_id)")
    params: Dict[str, Any] = Field(default_factory=dict, description="Global merge parameters")


class CampaignUpdateRequest(BaseModel):
    """Partial update of a draft; only fields sent are changed."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    subject: Optional[str] = Field(None, min_length=1, max_length=998)
    template_id: Optional[int] = Field(None, gt=0)
    html_content: Optional[str] = None
    params: Optional[Dict[str, Any]] = None
    target_filter: Optional[Dict[str, Any]] = None


class ScheduleRequest(BaseModel):
    scheduled_at: datetime = Field(..., description="Future start time (ISO 8601)")


class ReasonRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class SendTestRequest(BaseModel):
    """Test send to a staff inbox."""
    to_email: str = Field(..., min_length=3, max_length=320)
    to_name: Optional[str] = Field(None, max_length=255)
    variant_label: Optional[str] = Field(None, description="Send this A/B variant's content")

    @field_validator("to_email")
    @classmethod
    def looks_like_email(cls, value: str) -> str:
        value = value.strip()
        local, _, domain = value.partition("@")
        if not local or "." not in domain:
            raise ValueError("to_email must be an email address")
        return value


# Response Models
class CampaignResponse(BaseModel):
    id: UUID
    name: str
    subject: str
    campaign_type: CampaignType
    status: CampaignStatus
    template_id: Optional[int] = None
    html_content: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    target_filter: Dict[str, Any] = Field(default_factory=dict)
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_recipients: int
    sent_count: int
    failed_count: int
    skipped_count: int
    created_by: str
    updated_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class CampaignDetailResponse(CampaignResponse):
    recipient_stats: Dict[str, int] = Field(..., description="Recipient counts by status, opened and clicked")


class CampaignListResponse(BaseModel):
    total: int
    limit: int
    offset: int
    status_counts: Dict[str, int] = Field(..., description="Campaigns per status across all campaigns")
    campaigns: List[CampaignResponse]


class SendTestResponse(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class RecipientItem(BaseModel):
    id: UUID
    seq: int
    email: str
    full_name: Optional[str] = None
    status: RecipientStatus
    variant_id: Optional[UUID] = None
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    sent_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    clicked_at: Optional[datetime] = None


class RecipientListResponse(BaseModel):
    total: int
    limit: int
    offset: int
    recipients: List[RecipientItem]


class HistoryItem(BaseModel):
    id: UUID
    action: str
    changed_by: str
    notes: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class HistoryListResponse(BaseModel):
    total: int
    limit: int
    offset: int
    history: List[HistoryItem]


def _campaign_fields(campaign: Campaign) -> Dict[str, Any]:
    return {name: getattr(campaign, name) for name in CampaignResponse.model_fields}


def _to_response(campaign: Campaign) -> CampaignResponse:
    return CampaignResponse(**_campaign_fields(campaign))


def _recipient_item(recipient: CampaignRecipient) -> RecipientItem:
    return RecipientItem(**{name: getattr(recipient, name) for name in RecipientItem.model_fields})


def _history_item(entry: CampaignHistory) -> HistoryItem:
    return HistoryItem(
        id=entry.id,
        action=entry.action.value,
        changed_by=entry.changed_by,
        notes=entry.notes,
        metadata=entry.meta or {},
        created_at=entry.created_at,
    )


# Routes
@router.post("", response_model=CampaignResponse, status_code=status.HTTP_201_CREATED)
async def create_campaign(
    payload: CampaignCreateRequest,
    db: Session = Depends(get_db),
    staff: StaffSession = Depends(manage),
) -> CampaignResponse:
    """Create a draft campaign and build its recipient set from the filter."""
    logger.info(f"POST /admin/campaigns (type={payload.campaign_type.value})")

    campaign = CampaignService(db).create_campaign(
        actor=staff.user_id,
        name=payload.name,
        subject=payload.subject,
        campaign_type=payload.campaign_type,
        target_filter=payload.target_filter,
        template_id=payload.template_id,
        html_content=payload.html_content,
        params=payload.params,
    )
    return _to_response(campaign)


@router.get("", response_model=CampaignListResponse)
async def list_campaigns(
    status_filter: Optional[CampaignStatus] = Query(None, alias="status"),
    campaign_type: Optional[CampaignType] = Query(None),
    search: Optional[str] = Query(None, max_length=200, description="Matches name or subject"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    staff: StaffSession = Depends(read),
) -> CampaignListResponse:
    campaigns, total = CampaignService(db).list_campaigns(
        status=status_filter,
        campaign_type=campaign_type,
        search=search,
        limit=limit,
        offset=offset,
    )
    return CampaignListResponse(
        total=total,
        limit=limit,
        offset=offset,
        status_counts=count_by_status(db),
        campaigns=[_to_response(c) for c in campaigns],
    )


@router.get("/{campaign_id}", response_model=CampaignDetailResponse)
async def get_campaign(
    campaign_id: UUID,
    db: Session = Depends(get_db),
    staff: StaffSession = Depends(read),
) -> CampaignDetailResponse:
    campaign = CampaignService(db).get_campaign(campaign_id)
    return CampaignDetailResponse(
        **_campaign_fields(campaign),
        recipient_stats=recipient_service.get_recipient_stats(db, campaign_id),
    )


@router.patch("/{campaign_id}", response_model=CampaignResponse)
async def update_campaign(
    campaign_id: UUID,
    payload: CampaignUpdateRequest,
    db: Session = Depends(get_db),
    staff: StaffSession = Depends(manage),
) -> CampaignResponse:
    """
    Update a draft. Changing ``target_filter`` rebuilds the recipient set in
    the same transaction.
    """
    changes = payload.model_dump(exclude_unset=True)
    logger.info(f"PATCH /admin/campaigns/{campaign_id} (fields={sorted(changes)})")
    campaign = CampaignService(db).update_draft(campaign_id, changes, staff.user_id)
    return _to_response(campaign)


@router.delete("/{campaign_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_campaign(
    campaign_id: UUID,
    db: Session = Depends(get_db),
    staff: StaffSession = Depends(manage),
) -> Response:
    CampaignService(db).delete_draft(campaign_id, staff.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{campaign_id}/duplicate", response_model=CampaignResponse, status_code=status.HTTP_201_CREATED)
async def duplicate_campaign(
    campaign_id: UUID,
    db: Session = Depends(get_db),
    staff: StaffSession = Depends(manage),
) -> CampaignResponse:
    """Copy a campaign of any status into a new draft; A/B variants are not copied."""
    campaign = CampaignService(db).duplicate_campaign(campaign_id, staff.user_id)
    return _to_response(campaign)


@router.post("/{campaign_id}/start", response_model=CampaignResponse)
async def start_campaign(
    campaign_id: UUID,
    db: Session = Depends(get_db),
    staff: StaffSession = Depends(manage),
) -> CampaignResponse:
    """Start sending now. Delivery happens on the following cron ticks."""
    campaign = CampaignLifecycle(db).start(campaign_id, staff.user_id)
    return _to_response(campaign)


@router.post("/{campaign_id}/schedule", response_model=CampaignResponse)
async def schedule_campaign(
    campaign_id: UUID,
    payload: ScheduleRequest,
    db: Session = Depends(get_db),
    staff: StaffSession = Depends(manage),
) -> CampaignResponse:
    campaign = CampaignLifecycle(db).schedule(campaign_id, staff.user_id, payload.scheduled_at)
    return _to_response(campaign)


@router.post("/{campaign_id}/pause", response_model=CampaignResponse)
async def pause_campaign(
    campaign_id: UUID,
    payload: Optional[ReasonRequest] = None,
    db: Session = Depends(get_db),
    staff: StaffSession = Depends(manage),
) -> CampaignResponse:
    """Pause takes effect at the next chunk boundary."""
    reason = payload.reason if payload else None
    campaign = CampaignLifecycle(db).pause(campaign_id, staff.user_id, reason)
    return _to_response(campaign)


@router.post("/{campaign_id}/resume", response_model=CampaignResponse)
async def resume_campaign(
    campaign_id: UUID,
    db: Session = Depends(get_db),
    staff: StaffSession = Depends(manage),
) -> CampaignResponse:
    campaign = CampaignLifecycle(db).resume(campaign_id, staff.user_id)
    return _to_response(campaign)


@router.post("/{campaign_id}/cancel", response_model=CampaignResponse)
async def cancel_campaign(
    campaign_id: UUID,
    payload: Optional[ReasonRequest] = None,
    db: Session = Depends(get_db),
    staff: StaffSession = Depends(manage),
) -> CampaignResponse:
    reason = payload.reason if payload else None
    campaign = CampaignLifecycle(db).cancel(campaign_id, staff.user_id, reason)
    return _to_response(campaign)


@router.post("/{campaign_id}/send-test", response_model=SendTestResponse)
async def send_test(
    campaign_id: UUID,
    payload: SendTestRequest,
    db: Session = Depends(get_db),
    staff: StaffSession = Depends(manage),
    transport: EmailTransport = Depends(get_transport),
) -> SendTestResponse:
    """Send the campaign's content once to ``to_email`` with a ``[TEST]`` subject prefix."""
    result = await CampaignService(db).send_test(
        campaign_id,
        payload.to_email,
        staff.user_id,
        to_name=payload.to_name,
        variant_label=payload.variant_label,
        transport=transport,
    )
    return SendTestResponse(success=result.success, message_id=result.message_id, error=result.error)


@router.get("/{campaign_id}/recipients", response_model=RecipientListResponse)
async def list_recipients(
    campaign_id: UUID,
    status_filter: Optional[RecipientStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    staff: StaffSession = Depends(read),
) -> RecipientListResponse:
    CampaignService(db).get_campaign(campaign_id)
    recipients, total = recipient_service.list_recipients(
        db, campaign_id, status=status_filter, limit=limit, offset=offset
    )
    return RecipientListResponse(
        total=total,
        limit=limit,
        offset=offset,
        recipients=[_recipient_item(r) for r in recipients],
    )


@router.get("/{campaign_id}/history", response_model=HistoryListResponse)
async def get_history(
    campaign_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    staff: StaffSession = Depends(read),
) -> HistoryListResponse:
    CampaignService(db).get_campaign(campaign_id)
    entries, total = history_service.list_history(db, campaign_id, limit=limit, offset=offset)
    return HistoryListResponse(
        total=total,
        limit=limit,
        offset=offset,
        history=[_history_item(e) for e in entries],
    )
