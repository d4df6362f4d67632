"""
Audience filters, one concrete shape per campaign type.

Stored on the campaign as plain JSON; validated here whenever it crosses the
API boundary or is handed to the recipient builder.
"""
from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from mailroom.lib.clock import as_utc
from mailroom.lib.errors import ValidationException
from mailroom.models.campaigns import CampaignType


class _FilterBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    @field_validator("*", mode="after")
    @classmethod
    def datetimes_in_utc(cls, value):
        if isinstance(value, datetime):
            return as_utc(value)
        return value

    def to_storage(self) -> dict:
        """JSON-safe dict without the discriminator, as persisted on the campaign."""
        return self.model_dump(mode="json", exclude={"campaign_type"}, exclude_none=True)


class PreorderConversionFilter(_FilterBase):
    """Unconverted preorders with a live conversion token and marketing consent."""

    campaign_type: Literal["preorder-conversion"] = "preorder-conversion"
    box_type: Optional[str] = Field(None, description="Only preorders for this box")
    created_from: Optional[datetime] = Field(None, description="Preorders created at or after")
    created_to: Optional[datetime] = Field(None, description="Preorders created before")

    @model_validator(mode="after")
    def check_range(self):
        if self.created_from and self.created_to and self.created_from >= self.created_to:
            raise ValueError("created_from must be earlier than created_to")
        return self


class LifecycleFilter(_FilterBase):
    """Newsletter subscribers by status and tags."""

    campaign_type: Literal["lifecycle"] = "lifecycle"
    status: str = Field("active", description="Subscriber status")
    tags: List[str] = Field(default_factory=list, description="Match subscribers carrying any of these tags")
    box_type: Optional[str] = Field(None, description="Only subscribers interested in this box")


class PromotionalFilter(_FilterBase):
    """Registered customers."""

    campaign_type: Literal["promotional"] = "promotional"
    has_ordered: Optional[bool] = Field(None, description="True: customers with orders, False: without")
    last_order_before: Optional[datetime] = Field(None, description="Last order placed before this time")
    registered_after: Optional[datetime] = Field(None, description="Registered at or after this time")


TargetFilter = Annotated[
    Union[PreorderConversionFilter, LifecycleFilter, PromotionalFilter],
    Field(discriminator="campaign_type"),
]

_target_filter_adapter = TypeAdapter(TargetFilter)


def parse_target_filter(campaign_type: CampaignType | str, raw: Optional[dict[str, Any]]):
    """
    Validate ``raw`` as the filter shape for ``campaign_type``.

    Raises:
        ValidationException: unknown keys or values of the wrong type
    """
    data = dict(raw or {})
    data.pop("campaign_type", None)
    data["campaign_type"] = CampaignType(campaign_type).value
    try:
        return _target_filter_adapter.validate_python(data)
    except ValidationError as e:
        errors = {
            ".".join(str(p) for p in err["loc"] if p != data["campaign_type"]) or "target_filter": err["msg"]
            for err in e.errors()
        }
        raise ValidationException("Invalid target filter", errors=errors)
