import json
import os
import time
from dataclasses import asdict
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from loguru import logger
from dotenv import load_dotenv

from pipeline.worker import ResearchPipeline
from tools.config import load_settings
from tools.correlator import ResultCorrelator
from tools.csv_mapper import preview_csv
from tools.errors import (
    InputValidationError,
    InvalidConfigError,
    NotRetryableError,
    ProspectNotFoundError,
)
from tools.idempotency import Idem, callback_key
from tools.store import STATUSES, Owner, Prospect, ProspectInput, ProspectStore

# Load environment variables
load_dotenv()

# Configure logging
logger.add(os.getenv("LOG_FILE", "logs/app.log"), rotation="1 day", retention="7 days", level="INFO")

# Initialize FastAPI app
app = FastAPI(
    title="Prospect Research Pipeline",
    description="Batches prospects to an external AI research webhook and reconciles the results",
    version="1.0.0"
)

_store = ProspectStore()
pipeline = ResearchPipeline(_store, load_settings(), correlator=ResultCorrelator(_store))
idem = Idem()


def get_pipeline() -> ResearchPipeline:
    return pipeline


def get_owner(x_user_id: Optional[str] = Header(None),
              x_client_id: Optional[str] = Header(None)) -> Owner:
    """Caller identity, supplied by the authenticating proxy in front of this service."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return Owner(user_id=x_user_id, client_id=x_client_id or None)


async def dispatch_in_background(current: ResearchPipeline, prospects: List[Prospect]):
    try:
        await current.dispatch_prospects(prospects)
    except Exception as e:
        logger.error(f"Background dispatch of prospects {[p.id for p in prospects]} failed: {e}")


@app.get("/health")
def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "version": "1.0.0",
        "services": {
            "redis": "connected" if idem.connected else "disconnected",
            "workflow": "ready"
        }
    }


@app.get("/api/settings")
def read_settings():
    return get_pipeline().settings.model_dump()


@app.put("/api/settings")
async def update_settings(req: Request):
    """Replace the settings value; pipelines already running keep the one they started with."""
    global pipeline

    try:
        changes = await req.json()
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Settings body must be JSON")
    if not isinstance(changes, dict):
        raise HTTPException(status_code=400, detail="Settings body must be a JSON object")

    current = get_pipeline()
    settings = current.settings.with_overrides(**changes)
    pipeline = current.with_settings(settings)
    logger.info(f"Settings updated: {sorted(changes)}")
    return settings.model_dump()


@app.post("/api/prospects")
async def create_prospect(data: ProspectInput, background_tasks: BackgroundTasks,
                          owner: Owner = Depends(get_owner)):
    """Create one prospect and research it as a batch of one."""
    current = get_pipeline()
    prospect = await current.submit_prospect(data, owner)
    background_tasks.add_task(dispatch_in_background, current, [prospect])
    return prospect


@app.get("/api/prospects")
async def list_prospects(status: Optional[str] = None, owner: Owner = Depends(get_owner)):
    if status in (None, "", "all"):
        status = None
    elif status not in STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status '{status}'")
    return await get_pipeline().store.list_prospects(owner, status=status)


@app.get("/api/prospects/{prospect_id}")
async def get_prospect(prospect_id: int, owner: Owner = Depends(get_owner)):
    prospect = await get_pipeline().store.get_prospect(prospect_id, owner)
    if prospect is None:
        raise ProspectNotFoundError(f"Prospect {prospect_id} not found")
    return prospect


@app.post("/api/prospects/{prospect_id}/retry")
async def retry_prospect(prospect_id: int, background_tasks: BackgroundTasks,
                         owner: Owner = Depends(get_owner)):
    """Re-run research for a failed prospect."""
    current = get_pipeline()
    prospect = await current.retry_prospect(prospect_id, owner)
    background_tasks.add_task(dispatch_in_background, current, [prospect])
    return {
        "prospect_id": prospect.id,
        "status": prospect.status,
        "message": "Prospect research restarted"
    }


@app.post("/api/prospects/csv")
async def preview_upload(csv_file: UploadFile = File(...), has_headers: bool = Form(True),
                         owner: Owner = Depends(get_owner)):
    """Parse an uploaded CSV and suggest a column mapping."""
    raw = await csv_file.read()
    logger.info(f"CSV preview requested by {owner.user_id}: {csv_file.filename} ({len(raw)} bytes)")
    return asdict(preview_csv(raw, has_headers=has_headers))


@app.post("/api/prospects/csv/process")
async def process_upload(background_tasks: BackgroundTasks,
                         csv_file: UploadFile = File(...),
                         mapping: str = Form(...),
                         batch_size: Optional[int] = Form(None),
                         start_row: int = Form(1),
                         max_rows: Optional[int] = Form(None),
                         has_headers: bool = Form(True),
                         owner: Owner = Depends(get_owner)):
    """
    Start researching a CSV upload.

    Expected form fields:
        csv_file: the file
        mapping: JSON object, e.g. {"first_name": "First Name", "email": "Work Email", ...}
        batch_size, start_row (1-based), max_rows, has_headers: optional
    """
    try:
        column_mapping = json.loads(mapping)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="mapping must be a JSON object")
    if not isinstance(column_mapping, dict):
        raise HTTPException(status_code=400, detail="mapping must be a JSON object")

    current = get_pipeline()
    if batch_size is not None:
        batch_size = current.settings.with_overrides(batch_size=batch_size).batch_size

    raw = await csv_file.read()
    upload, rows = await current.start_upload(
        raw,
        csv_file.filename or "upload.csv",
        column_mapping,
        owner,
        start_row=start_row,
        max_rows=max_rows,
        has_headers=has_headers,
    )
    background_tasks.add_task(current.run_upload, upload.id, owner, rows, batch_size)

    return {
        "upload_id": upload.id,
        "total_rows": upload.total_rows,
        "message": "CSV processing started"
    }


@app.get("/api/uploads/{upload_id}")
async def get_upload(upload_id: int, owner: Owner = Depends(get_owner)):
    upload = await get_pipeline().store.get_upload(upload_id, owner)
    if upload is None:
        raise HTTPException(status_code=404, detail="Upload not found")
    return upload


@app.post("/api/webhook/results")
async def research_results(req: Request, background_tasks: BackgroundTasks):
    """
    Inbound callback from the research workflow.

    The body may be a bare result, an array of results, or results wrapped in
    {"output": ...} / {"response": {"body": ...}}. It is acknowledged at once and
    correlated afterwards; unmatched results are dropped.
    """
    body = await req.body()
    logger.info(f"Research callback received ({len(body)} bytes)")

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Research callback body is not valid JSON")
        raise HTTPException(status_code=400, detail="Body must be JSON")

    current = get_pipeline()
    key = callback_key(body, req.headers.get("X-Event-Id"))
    if not idem.check_and_set(key, ttl=current.settings.callback_dedupe_ttl_seconds):
        logger.warning(f"Duplicate research callback ignored: {key}")
        current.correlator.stats["duplicates_ignored"] += 1
        return {"status": "duplicate_ignored", "message": "Callback already received"}

    background_tasks.add_task(current.correlator.correlate_callback, payload)
    return {"status": "accepted", "message": "Data received successfully"}


@app.post("/admin/expire-stale")
async def expire_stale(max_age_seconds: Optional[int] = None):
    """Fail prospects stuck in processing longer than the given (or configured) age."""
    current = get_pipeline()
    max_age = max_age_seconds or current.settings.stale_processing_seconds
    if not max_age or max_age <= 0:
        raise HTTPException(status_code=400, detail="No staleness threshold given or configured")
    expired = await current.correlator.expire_stale(max_age)
    return {"expired": expired, "max_age_seconds": max_age}


@app.get("/metrics")
async def get_metrics():
    """Get system metrics."""
    current = get_pipeline()
    return {
        "prospects": await current.store.count_by_status(),
        "correlation": dict(current.correlator.stats),
    }


# Error handlers
@app.exception_handler(InputValidationError)
async def input_error_handler(request: Request, exc: InputValidationError):
    logger.warning(f"Rejected input: {exc}")
    return JSONResponse(status_code=400, content={"status": "error", "message": str(exc)})


@app.exception_handler(InvalidConfigError)
async def config_error_handler(request: Request, exc: InvalidConfigError):
    return JSONResponse(status_code=400, content={"status": "error", "message": str(exc)})


@app.exception_handler(ProspectNotFoundError)
async def not_found_handler(request: Request, exc: ProspectNotFoundError):
    return JSONResponse(status_code=404, content={"status": "error", "message": str(exc)})


@app.exception_handler(NotRetryableError)
async def not_retryable_handler(request: Request, exc: NotRetryableError):
    return JSONResponse(status_code=400, content={"status": "error", "message": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn

    # Create logs directory if it doesn't exist
    os.makedirs("logs", exist_ok=True)

    logger.info("Starting Prospect Research Pipeline")

    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=True,
        log_level="info"
    )
