"""
Email cron - scheduled driver for campaign delivery.

Runs every 15 minutes, either called by the platform scheduler through
``/cron/email`` or in-process through APScheduler. It is safe to call more
often than needed: with nothing due it is a no-op.

Execution flow:
1. Acquire the ``email-cron`` lease (an overlapping invocation returns skipped)
2. Promote scheduled campaigns whose ``scheduled_at`` has passed
3. For every sending campaign: record a stall if it has not been updated for
   the stall threshold, then process one chunk
4. Stop starting promotions/chunks once the wall-clock budget is spent;
   the rest is deferred to the next tick. The lease is renewed before each
   chunk; a tick that lost it to a newer invocation stops there
5. Release the lease and return a summary

Every step is fault-isolated: one campaign's failure is logged and counted,
and the loop moves on.
"""
import asyncio
import time
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from mailroom.jobs.email_cleanup import run_email_cleanup_sync
from mailroom.lib.clock import WallClockBudget, as_utc, utcnow
from mailroom.lib.config_flags import EngineConfig, get_engine_config
from mailroom.lib.db import get_db_context
from mailroom.lib.errors import AppException
from mailroom.lib.logging import get_logger, set_correlation_id
from mailroom.lib.metrics import get_metrics_collector
from mailroom.models.campaign_history import CampaignAction, SYSTEM_ACTOR
from mailroom.models.jobs import JobStatus
from mailroom.services import history_service, lease_service
from mailroom.services.campaign_engine import CampaignEngine
from mailroom.services.campaign_service import CampaignService
from mailroom.services.email_transport import EmailTransport
from mailroom.services.lifecycle import CampaignLifecycle


logger = get_logger(__name__)


def _empty_summary() -> Dict[str, Any]:
    return {
        "skipped": False,
        "scheduled": 0,
        "processed": 0,
        "completed": 0,
        "stalled": 0,
        "errors": 0,
        "deferred": 0,
        "budget_exhausted": False,
    }


async def run_email_cron(
    db: Session,
    transport: Optional[EmailTransport] = None,
    config: Optional[EngineConfig] = None,
    clock: Callable[[], float] = time.monotonic,
) -> Dict[str, Any]:
    """
    Run one cron tick.

    Args:
        db: Database session
        transport: Email transport (configured provider if omitted)
        config: Engine configuration (active configuration if omitted)
        clock: Monotonic clock used for the wall-clock budget

    Returns:
        Summary dict:
        {
            "skipped": bool,          # another invocation holds the cron lease
            "scheduled": int,         # campaigns promoted to sending
            "processed": int,         # recipients processed across all chunks
            "completed": int,         # campaigns completed this tick
            "stalled": int,           # stalled campaigns detected
            "errors": int,            # isolated failures
            "deferred": int,          # promotions/chunks left for the next tick
            "budget_exhausted": bool,
            "elapsed_ms": int,
            "timestamp": str,
        }
    """
    config = config or get_engine_config()
    metrics = get_metrics_collector()
    budget = WallClockBudget(config.time_budget_seconds, clock=clock)
    summary = _empty_summary()

    holder = lease_service.new_holder_id()
    set_correlation_id(f"email-cron-{holder[:12]}")

    def finish(outcome: str) -> Dict[str, Any]:
        summary["elapsed_ms"] = int(budget.elapsed * 1000)
        summary["timestamp"] = utcnow().isoformat()
        metrics.increment_cron_runs(outcome)
        logger.info("Email cron run complete", extra={"summary": summary, "outcome": outcome})
        return summary

    if not lease_service.acquire_lease(db, lease_service.CRON_LEASE, holder, config.lease_ttl_seconds):
        summary["skipped"] = True
        return finish("skipped")

    lease_status = JobStatus.DONE
    try:
        lifecycle = CampaignLifecycle(db)
        campaigns = CampaignService(db, config)
        engine = CampaignEngine(db, transport=transport, config=config, lifecycle=lifecycle)

        _promote_scheduled(db, campaigns, lifecycle, budget, summary)
        await _process_sending(db, campaigns, engine, config, budget, summary, holder)
    except Exception:
        lease_status = JobStatus.FAILED
        db.rollback()
        logger.exception("Email cron run failed")
        raise
    finally:
        lease_service.release_lease(db, lease_service.CRON_LEASE, holder, status=lease_status)

    return finish("completed")


def _promote_scheduled(
    db: Session,
    campaigns: CampaignService,
    lifecycle: CampaignLifecycle,
    budget: WallClockBudget,
    summary: Dict[str, Any],
) -> None:
    due = campaigns.get_scheduled_due()
    for index, campaign in enumerate(due):
        if budget.exhausted():
            summary["budget_exhausted"] = True
            summary["deferred"] += len(due) - index
            logger.warning("Time budget spent while promoting scheduled campaigns, deferring the rest")
            return

        try:
            lifecycle.start(campaign.id, SYSTEM_ACTOR, triggered_by="cron")
            summary["scheduled"] += 1
            logger.info(f"Started scheduled campaign {campaign.id}", extra={"campaign_id": str(campaign.id)})
        except AppException as e:
            summary["errors"] += 1
            logger.warning(
                f"Could not start scheduled campaign {campaign.id}: {e.message}",
                extra={"campaign_id": str(campaign.id), "code": e.code},
            )
        except Exception:
            db.rollback()
            summary["errors"] += 1
            logger.exception(f"Failed to start scheduled campaign {campaign.id}")


async def _process_sending(
    db: Session,
    campaigns: CampaignService,
    engine: CampaignEngine,
    config: EngineConfig,
    budget: WallClockBudget,
    summary: Dict[str, Any],
    holder: str,
) -> None:
    sending = campaigns.get_sending()
    stale_before = utcnow() - timedelta(hours=config.stall_threshold_hours)

    for index, campaign in enumerate(sending):
        campaign_id = campaign.id
        last_update = as_utc(campaign.updated_at)

        if last_update < stale_before:
            try:
                history_service.record_action(
                    db,
                    campaign_id,
                    CampaignAction.STALLED_DETECTED,
                    SYSTEM_ACTOR,
                    notes="Stalled campaign detected, continuing processing",
                    metadata={
                        "last_updated": last_update.isoformat(),
                        "stall_threshold_hours": config.stall_threshold_hours,
                    },
                )
                db.commit()
                summary["stalled"] += 1
                get_metrics_collector().increment_stalls()
                logger.warning(
                    f"Stalled campaign detected: {campaign_id} (last updated {last_update.isoformat()})",
                    extra={"campaign_id": str(campaign_id)},
                )
            except Exception:
                db.rollback()
                summary["errors"] += 1
                logger.exception(f"Failed to record stall for campaign {campaign_id}")

        if budget.exhausted():
            summary["budget_exhausted"] = True
            summary["deferred"] += len(sending) - index
            logger.warning("Time budget spent, deferring remaining campaigns to the next invocation")
            return

        if not lease_service.renew_lease(db, lease_service.CRON_LEASE, holder, config.lease_ttl_seconds):
            summary["deferred"] += len(sending) - index
            logger.warning("Cron lease taken over by another invocation, leaving the remaining campaigns to it")
            return

        try:
            result = await engine.process_chunk(campaign_id, SYSTEM_ACTOR, config.chunk_size)
            summary["processed"] += result.processed
            if result.completed:
                summary["completed"] += 1
            logger.info(
                f"Campaign {campaign_id}: processed={result.processed}, "
                f"remaining={result.remaining}, completed={result.completed}",
                extra={"campaign_id": str(campaign_id)},
            )
        except Exception:
            db.rollback()
            summary["errors"] += 1
            logger.exception(f"Error processing campaign {campaign_id}")


def run_email_cron_sync() -> Dict[str, Any]:
    """
    Synchronous wrapper for APScheduler (BackgroundScheduler runs plain callables).
    """
    with get_db_context() as db:
        return asyncio.run(run_email_cron(db))


def register_email_cron_jobs(scheduler_manager, interval_minutes: Optional[int] = None) -> None:
    """
    Register the email cron tick and the daily cleanup with the scheduler.

    Example:
        from mailroom.jobs.scheduler import get_scheduler
        from mailroom.jobs.email_cron import register_email_cron_jobs

        scheduler = get_scheduler()
        register_email_cron_jobs(scheduler)
        scheduler.start()
    """
    from mailroom.lib.settings import settings

    minutes = interval_minutes or settings.cron_interval_minutes
    scheduler_manager.add_interval_job(
        func=run_email_cron_sync,
        job_id="email_cron",
        minutes=minutes,
    )
    scheduler_manager.add_daily_job(
        func=run_email_cleanup_sync,
        job_id="email_cleanup",
        hour=settings.cleanup_hour_utc,
    )
    logger.info(
        f"Registered email cron job (every {minutes} minutes) and daily cleanup "
        f"({settings.cleanup_hour_utc:02d}:00 UTC)"
    )
