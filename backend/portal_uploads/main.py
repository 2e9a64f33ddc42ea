"""FastAPI application entry point."""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from portal_uploads.config import settings
from portal_uploads.database import engine, get_db
from portal_uploads.models import Base

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup, start background worker."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    worker_task = None
    if settings.JOB_WORKER_ENABLED:
        # Recover any jobs stuck in "running" from a previous crash
        from portal_uploads.services.job_worker import recover_stale_jobs, worker_loop
        await recover_stale_jobs()
        worker_task = asyncio.create_task(worker_loop())

    yield

    # Cleanup
    if worker_task:
        worker_task.cancel()
    from portal_uploads.services.provisioning.backends import close_redis_client
    await close_redis_client()
    await engine.dispose()


app = FastAPI(
    title="Portal Uploads API",
    version="1.0.0",
    description="Chunked file uploads and storage-account provisioning.",
    lifespan=lifespan,
)

# CORS
origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Every error answers {"error": "<message>"}; upload clients read that field
@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = ", ".join(".".join(str(p) for p in err["loc"][1:]) or "body" for err in exc.errors())
    return JSONResponse(status_code=400, content={"error": f"Invalid request: {fields}"})


@app.get("/api/health")
async def health_check():
    """Verify API and database connectivity."""
    try:
        async for db in get_db():
            await db.execute(text("SELECT 1"))
            return {"status": "ok", "database": "connected"}
    except Exception as e:
        return {"status": "error", "database": str(e)}


# Register routers
from portal_uploads.routes.uploads import router as uploads_router
from portal_uploads.routes.files import router as files_router
from portal_uploads.routes.storage_accounts import router as storage_accounts_router
from portal_uploads.routes.jobs import router as jobs_router
app.include_router(uploads_router)
app.include_router(files_router)
app.include_router(storage_accounts_router)
app.include_router(jobs_router)
