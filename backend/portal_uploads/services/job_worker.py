"""Background job worker.

Polls the jobs table for 'queued' jobs and processes them.
Runs as an asyncio task within the FastAPI process; used for storage
maintenance sweeps that are too slow for a request.
"""
import asyncio
import logging
import time
import traceback
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, select

from portal_uploads.config import settings
from portal_uploads.database import async_session
from portal_uploads.models.job import Job

logger = logging.getLogger(__name__)

# ── In-memory cancel cache ───────────────────────────────────────
# mark_job_cancelled() is called by the cancel route AFTER commit.
# is_job_cancelled() checks this set first, DB fallback every 10s.
_cancelled_jobs: set[str] = set()
_cancel_check_times: dict[str, float] = {}
_CANCEL_CHECK_INTERVAL = 10.0  # seconds between DB fallback checks


async def recover_stale_jobs(stale_minutes: int = 15):
    """Mark jobs stuck in 'running' for longer than `stale_minutes` as failed.

    Call on startup to recover from process crashes that left jobs stranded.
    """
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=stale_minutes)
    async with async_session() as db:
        result = await db.execute(
            select(Job).where(
                and_(
                    Job.status == "running",
                    Job.started_at < cutoff,
                )
            )
        )
        stale_jobs = result.scalars().all()
        for job in stale_jobs:
            job.status = "failed"
            job.error_message = f"Recovered on startup: job was running for >{stale_minutes} minutes"
            job.completed_at = datetime.now(timezone.utc)
            logger.warning(f"Recovered stale job {job.id} (started at {job.started_at})")
        if stale_jobs:
            await db.commit()
            logger.info(f"Recovered {len(stale_jobs)} stale job(s)")


class JobCancelledError(Exception):
    """Raised when a job detects it has been cancelled (cooperative cancellation)."""
    pass


def safe_error_message(e: Exception, fallback: str = "Job interrupted") -> str:
    """Extract a meaningful error message; falls back to the class name for empty str(e)."""
    msg = str(e).strip()
    if not msg:
        msg = f"{type(e).__name__}: {fallback}"
    return msg


# Job handler registry - add new job types here
JOB_HANDLERS = {}


def register_job_handler(job_type: str):
    """Decorator to register a job handler function."""
    def decorator(func):
        JOB_HANDLERS[job_type] = func
        return func
    return decorator


async def process_job(job_id, job_type: str, params: dict) -> dict:
    """Dispatch job to the appropriate handler."""
    handler = JOB_HANDLERS.get(job_type)
    if not handler:
        raise ValueError(f"Unknown job type: {job_type}")
    return await handler(job_id, params)


async def update_job_progress(job_id, current: int, total: int, message: str = ""):
    """Update job progress (called from within handlers)."""
    async with async_session() as db:
        job = await db.get(Job, job_id)
        if job:
            job.progress = {"current": current, "total": total, "message": message}
            await db.commit()


def mark_job_cancelled(job_id) -> None:
    """Mark a job as cancelled in the in-memory cache.

    Called by the cancel route AFTER the DB commit succeeds, so
    is_job_cancelled() returns True without a DB round-trip.
    """
    _cancelled_jobs.add(str(job_id))


def _cleanup_cancelled_job(job_id) -> None:
    """Remove a job from the cancel cache after it reaches a terminal state."""
    job_key = str(job_id)
    _cancelled_jobs.discard(job_key)
    _cancel_check_times.pop(job_key, None)


async def is_job_cancelled(job_id) -> bool:
    """Check if a job has been cancelled (cooperative cancellation).

    Memory-first; the database is consulted at most once every
    _CANCEL_CHECK_INTERVAL seconds to catch cancellations from other processes.
    """
    job_key = str(job_id)
    if job_key in _cancelled_jobs:
        return True
    now = time.monotonic()
    last_check = _cancel_check_times.get(job_key, 0)
    if now - last_check < _CANCEL_CHECK_INTERVAL:
        return False
    _cancel_check_times[job_key] = now
    async with async_session() as db:
        job = await db.get(Job, job_id)
        if job is not None and job.status == "cancelled":
            _cancelled_jobs.add(job_key)
            return True
    return False


async def _mark_failed(job_id, error: Exception) -> None:
    # Retry up to 3 times so a transient DB error doesn't leave the job stuck in "running"
    for attempt in range(3):
        try:
            async with async_session() as db:
                j = await db.get(Job, job_id)
                if j and j.status not in ("completed", "cancelled"):
                    j.status = "failed"
                    j.error_message = safe_error_message(error)[:2000]
                    j.completed_at = datetime.now(timezone.utc)
                    await db.commit()
            return
        except Exception as db_err:
            logger.error(f"Failed to mark job {job_id} as failed (attempt {attempt + 1}/3): {db_err}")
            if attempt < 2:
                await asyncio.sleep(1)


async def run_next_job() -> bool:
    """Claim and run the oldest queued job. Returns False when the queue is empty."""
    async with async_session() as db:
        result = await db.execute(
            select(Job)
            .where(Job.status == "queued")
            .order_by(Job.created_at)
            .limit(1)
        )
        job = result.scalar_one_or_none()
        if not job:
            return False

        logger.info(f"Processing job {job.id} (type={job.job_type})")
        job.status = "running"
        job.started_at = datetime.now(timezone.utc)
        await db.commit()

        try:
            result_data = await process_job(job.id, job.job_type, job.params)

            # Re-check: if job was cancelled during execution, don't overwrite
            await db.refresh(job)
            if job.status == "cancelled":
                logger.info(f"Job {job.id} was cancelled during execution, skipping completed update")
            else:
                job.status = "completed"
                job.result = result_data or {}
                job.completed_at = datetime.now(timezone.utc)
                job.progress = {"current": 1, "total": 1, "message": "Done"}
                await db.commit()
                logger.info(f"Job {job.id} completed")
        except JobCancelledError:
            logger.info(f"Job {job.id} stopped after cancellation")
        except Exception as e:
            logger.error(f"Job {job.id} failed: {e}")
            logger.error(traceback.format_exc())
            await _mark_failed(job.id, e)
        finally:
            _cleanup_cancelled_job(job.id)
    return True


async def worker_loop(poll_interval: float = 5.0):
    """Main worker loop. Polls for queued jobs every `poll_interval` seconds."""
    logger.info("Job worker started")
    while True:
        try:
            if await run_next_job():
                continue
        except Exception as e:
            logger.error(f"Worker loop error: {e}")
        await asyncio.sleep(poll_interval)


# ── Job Handlers ─────────────────────────────────────────────────

def _job_hooks(job_id):
    async def progress(current: int, total: int, message: str = ""):
        await update_job_progress(job_id, current, total, message)

    async def cancelled() -> bool:
        return await is_job_cancelled(job_id)

    return progress, cancelled


@register_job_handler("ensure-storage-accounts")
async def handle_ensure_storage_accounts(job_id, params: dict) -> dict:
    """Ensure storage accounts for one user (params.user_id) or every user."""
    from portal_uploads.services.provisioning import get_storage_manager
    from portal_uploads.services.provisioning.maintenance import (
        MaintenanceCancelledError, ensure_storage_accounts_for_all_users,
    )

    manager = get_storage_manager()
    user_id = params.get("user_id")
    if user_id:
        result = await manager.ensure_storage_accounts_for_user(
            user_id, force_create=params.get("force_create", False),
        )
        return {
            "created": result.created,
            "reactivated": result.reactivated,
            "validated": result.validated,
            "errors": result.errors,
        }

    progress, cancelled = _job_hooks(job_id)
    try:
        return await ensure_storage_accounts_for_all_users(
            manager,
            params.get("batch_size", settings.MAINTENANCE_BATCH_SIZE),
            force_create=params.get("force_create", False),
            progress_callback=progress,
            cancel_check=cancelled,
        )
    except MaintenanceCancelledError as e:
        raise JobCancelledError(str(e)) from e


@register_job_handler("storage-maintenance")
async def handle_storage_maintenance(job_id, params: dict) -> dict:
    """Run the storage-account health check in the background."""
    from portal_uploads.services.provisioning import get_storage_manager
    from portal_uploads.services.provisioning.maintenance import (
        MaintenanceCancelledError, perform_health_check,
    )

    progress, cancelled = _job_hooks(job_id)
    try:
        return await perform_health_check(
            get_storage_manager(),
            params.get("user_id"),
            reactivate_disconnected=params.get("reactivate_disconnected", False),
            batch_size=params.get("batch_size", settings.MAINTENANCE_BATCH_SIZE),
            progress_callback=progress,
            cancel_check=cancelled,
        )
    except MaintenanceCancelledError as e:
        raise JobCancelledError(str(e)) from e
