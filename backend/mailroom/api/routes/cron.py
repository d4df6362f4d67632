"""
Cron endpoint for the platform scheduler.

Both routes take ``Authorization: Bearer <CRON_SECRET>`` and return a summary;
overlapping calls are answered with ``skipped: true``.

- GET|POST /cron/email          - One email cron tick (every 15 minutes)
- GET|POST /cron/email/cleanup  - Daily housekeeping
"""
from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from mailroom.api.dependencies import get_db, get_transport, verify_cron_secret
from mailroom.jobs.email_cleanup import run_email_cleanup
from mailroom.jobs.email_cron import run_email_cron
from mailroom.lib.logging import get_logger
from mailroom.services.email_transport import EmailTransport


logger = get_logger(__name__)
router = APIRouter(prefix="/cron", tags=["cron"])


@router.api_route("/email", methods=["GET", "POST"], dependencies=[Depends(verify_cron_secret)])
async def email_cron(
    db: Session = Depends(get_db),
    transport: EmailTransport = Depends(get_transport),
) -> Dict[str, Any]:
    summary = await run_email_cron(db, transport=transport)
    return {"success": True, **summary}


@router.api_route("/email/cleanup", methods=["GET", "POST"], dependencies=[Depends(verify_cron_secret)])
async def email_cleanup(db: Session = Depends(get_db)) -> Dict[str, Any]:
    summary = run_email_cleanup(db)
    return {"success": True, **summary}
