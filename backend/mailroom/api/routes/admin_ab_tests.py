"""
Admin A/B Test API.

Routes:
- GET    /admin/campaigns/{id}/ab-test - Variant results and the winner, if any
- POST   /admin/campaigns/{id}/ab-test - Create (or replace) the variants of a draft
- DELETE /admin/campaigns/{id}/ab-test - Remove the variants of a draft
"""
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from mailroom.api.dependencies import CAMPAIGN_MANAGER_ROLES, get_db, require_staff
from mailroom.lib.jwt import StaffSession
from mailroom.lib.logging import get_logger
from mailroom.services.ab_testing import ABTestService, VariantInput


logger = get_logger(__name__)
router = APIRouter(prefix="/admin/campaigns", tags=["admin_ab_tests"])


class ABTestCreateRequest(BaseModel):
    variants: List[VariantInput] = Field(..., description="At least two variants with unique labels")


class VariantResult(BaseModel):
    id: UUID
    variant_label: str
    subject: Optional[str] = None
    template_id: Optional[int] = None
    recipient_percentage: Optional[int] = None
    assigned_count: int
    sent_count: int
    opened_count: int
    clicked_count: int
    open_rate: float = Field(..., description="Percent of sent, one decimal")
    click_rate: float = Field(..., description="Percent of sent, one decimal")


class Winner(BaseModel):
    variant_id: UUID
    variant_label: str
    metric: str
    value: float


class ABTestResponse(BaseModel):
    campaign_id: UUID
    variants: List[VariantResult]
    total_sent: int
    min_sample_size: int
    has_minimum_sample: bool
    winner: Optional[Winner] = Field(None, description="Only reported for finished campaigns with a clear leader")


def _response(service: ABTestService, campaign_id: UUID, metric: str) -> ABTestResponse:
    results: Dict[str, Any] = service.get_results(campaign_id)
    winner = service.determine_winner(campaign_id, metric)
    return ABTestResponse(**results, winner=winner)


@router.get("/{campaign_id}/ab-test", response_model=ABTestResponse)
async def get_ab_test(
    campaign_id: UUID,
    metric: str = Query("open_rate", description="open_rate or click_rate"),
    db: Session = Depends(get_db),
    staff: StaffSession = Depends(require_staff()),
) -> ABTestResponse:
    return _response(ABTestService(db), campaign_id, metric)


@router.post("/{campaign_id}/ab-test", response_model=ABTestResponse, status_code=status.HTTP_201_CREATED)
async def create_ab_test(
    campaign_id: UUID,
    payload: ABTestCreateRequest,
    db: Session = Depends(get_db),
    staff: StaffSession = Depends(require_staff(*CAMPAIGN_MANAGER_ROLES)),
) -> ABTestResponse:
    """Replace the draft's variants and split its current recipients across them."""
    logger.info(
        f"POST /admin/campaigns/{campaign_id}/ab-test "
        f"(variants={[v.variant_label for v in payload.variants]})"
    )
    service = ABTestService(db)
    service.create_ab_test(campaign_id, payload.variants, staff.user_id)
    return _response(service, campaign_id, "open_rate")


@router.delete("/{campaign_id}/ab-test", status_code=status.HTTP_204_NO_CONTENT)
async def delete_ab_test(
    campaign_id: UUID,
    db: Session = Depends(get_db),
    staff: StaffSession = Depends(require_staff(*CAMPAIGN_MANAGER_ROLES)),
) -> Response:
    ABTestService(db).delete_ab_test(campaign_id, staff.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
