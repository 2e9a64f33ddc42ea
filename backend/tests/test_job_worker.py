"""Tests for the background job worker and its storage-maintenance handlers."""
import pytest
from sqlalchemy import select

from portal_uploads.models import Job, StorageAccount
from portal_uploads.services import job_worker
from portal_uploads.services.provisioning import set_storage_manager


@pytest.fixture(autouse=True)
def wired_worker(monkeypatch, session_factory, manager):
    monkeypatch.setattr(job_worker, "async_session", session_factory)
    set_storage_manager(manager)
    yield
    set_storage_manager(None)


async def queue_job(session_factory, job_type, params):
    async with session_factory() as db:
        job = Job(job_type=job_type, params=params)
        db.add(job)
        await db.commit()
        return job.id


async def test_empty_queue(session_factory):
    assert await job_worker.run_next_job() is False


async def test_ensure_job_for_every_user(session_factory, make_user):
    await make_user("user-1")
    await make_user("user-2", accounts=(("dropbox", "d-2"),), email="two@example.com")
    job_id = await queue_job(session_factory, "ensure-storage-accounts", {})

    assert await job_worker.run_next_job() is True

    async with session_factory() as db:
        job = await db.get(Job, job_id)
        accounts = (await db.execute(select(StorageAccount))).scalars().all()
        assert len(accounts) == 2
    assert job.status == "completed"
    assert job.result["usersProcessed"] == 2
    assert job.result["accountsCreated"] == 2


async def test_maintenance_job_for_one_user(session_factory, make_user):
    await make_user()
    job_id = await queue_job(session_factory, "storage-maintenance", {"user_id": "user-1"})

    await job_worker.run_next_job()

    async with session_factory() as db:
        job = await db.get(Job, job_id)
    assert job.status == "completed"
    assert job.result["summary"]["users_checked"] == 1
    assert job.result["summary"]["issues_fixed"] == 1


async def test_failing_handler_marks_job_failed(session_factory, monkeypatch):
    async def explode(job_id, params):
        raise RuntimeError("storage backend unreachable")

    monkeypatch.setitem(job_worker.JOB_HANDLERS, "explode", explode)
    job_id = await queue_job(session_factory, "explode", {})

    await job_worker.run_next_job()

    async with session_factory() as db:
        job = await db.get(Job, job_id)
    assert job.status == "failed"
    assert job.error_message == "storage backend unreachable"


async def test_unknown_job_type():
    with pytest.raises(ValueError):
        await job_worker.process_job("job-1", "nope", {})


async def test_cancel_cache():
    job_worker.mark_job_cancelled("job-9")
    assert await job_worker.is_job_cancelled("job-9")
    job_worker._cleanup_cancelled_job("job-9")
    assert "job-9" not in job_worker._cancelled_jobs
