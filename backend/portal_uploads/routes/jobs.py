"""Jobs API - submit, list, check status, cancel background jobs."""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime, timezone

from portal_uploads.database import get_db
from portal_uploads.models.job import Job
from portal_uploads.schemas.job import JobCreate, JobResponse
from portal_uploads.services.job_worker import JOB_HANDLERS, mark_job_cancelled

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.post("", response_model=JobResponse, status_code=201)
async def submit_job(
    body: JobCreate,
    db: AsyncSession = Depends(get_db),
):
    """Submit a new background job."""
    if body.job_type not in JOB_HANDLERS:
        raise HTTPException(400, f"Unknown job type: {body.job_type}")
    job = Job(job_type=body.job_type, params=body.params, status="queued")
    db.add(job)
    await db.commit()
    await db.refresh(job)
    return job


@router.get("", response_model=list[JobResponse])
async def list_jobs(
    status: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """List jobs, optionally filtered by status."""
    query = select(Job).order_by(desc(Job.created_at)).limit(limit).offset(offset)
    if status:
        query = query.where(Job.status == status)
    result = await db.execute(query)
    return result.scalars().all()


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, db: AsyncSession = Depends(get_db)):
    """Get job status and progress."""
    job = await db.get(Job, job_id)
    if not job:
        raise HTTPException(404, "Job not found")
    return job


@router.post("/{job_id}/cancel")
async def cancel_job(job_id: str, db: AsyncSession = Depends(get_db)):
    """Cancel a queued or running job."""
    job = await db.get(Job, job_id)
    if not job:
        raise HTTPException(404, "Job not found")
    if job.status in ("completed", "failed"):
        raise HTTPException(400, f"Cannot cancel job in '{job.status}' state")
    if job.status != "cancelled":
        job.status = "cancelled"
        job.completed_at = datetime.now(timezone.utc)
        await db.commit()
    mark_job_cancelled(job_id)
    return {"id": job_id, "status": "cancelled"}
