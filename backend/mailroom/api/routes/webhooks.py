"""
Email provider webhook.

POST /webhooks/email-events?secret=<WEBHOOK_SECRET>

The provider posts one event or a list of events. Handled events:
- opened / clicked: first open and first click timestamps on the recipient
- hard_bounce: sent -> bounced
- unsubscribed: address added to the unsubscribe registry

Other events are acknowledged and ignored. A failing event is logged and
counted without affecting the rest of the batch, and the response is always
200 so the provider does not redeliver.
"""
from typing import List, Optional, Union

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from mailroom.api.dependencies import get_db, verify_webhook_secret
from mailroom.lib.logging import get_logger
from mailroom.services import recipient_service, unsubscribe_service


logger = get_logger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])

HANDLED_EVENTS = frozenset({"opened", "clicked", "hard_bounce", "unsubscribed"})


class DeliveryEvent(BaseModel):
    """One provider event; unknown fields are ignored."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    event: str
    email: Optional[str] = None
    message_id: Optional[str] = Field(None, alias="message-id")
    reason: Optional[str] = None


class WebhookResponse(BaseModel):
    success: bool
    processed: int
    ignored: int
    errors: int


def handle_event(db: Session, event: DeliveryEvent) -> bool:
    """
    Apply one event.

    Returns:
        True if the event changed anything
    """
    recipient = None
    if event.message_id:
        recipient = recipient_service.find_by_message_id(db, event.message_id)

    if event.event == "unsubscribed":
        email = event.email or (recipient.email if recipient else None)
        if not email:
            return False
        unsubscribe_service.record_unsubscribe(
            db,
            email,
            source="brevo",
            campaign_id=recipient.campaign_id if recipient else None,
            reason=event.reason,
        )
        return True

    if recipient is None:
        logger.info(
            f"No campaign recipient for message {event.message_id}, ignoring {event.event}",
            extra={"message_id": event.message_id},
        )
        return False

    if event.event == "hard_bounce":
        return recipient_service.mark_bounced(db, recipient.id, event.reason)
    return recipient_service.mark_engagement(db, recipient.id, event.event)


@router.post("/email-events", response_model=WebhookResponse, dependencies=[Depends(verify_webhook_secret)])
async def email_events(
    payload: Union[List[DeliveryEvent], DeliveryEvent] = Body(...),
    db: Session = Depends(get_db),
) -> WebhookResponse:
    events = payload if isinstance(payload, list) else [payload]

    processed = ignored = errors = 0
    for event in events:
        if event.event not in HANDLED_EVENTS:
            ignored += 1
            continue
        try:
            handle_event(db, event)
            processed += 1
        except Exception:
            db.rollback()
            errors += 1
            logger.exception(
                f"Failed to apply {event.event} event for message {event.message_id}",
                extra={"message_id": event.message_id},
            )

    logger.info(
        f"Webhook batch: {processed} processed, {ignored} ignored, {errors} errors",
        extra={"events": len(events)},
    )
    return WebhookResponse(success=errors == 0, processed=processed, ignored=ignored, errors=errors)
