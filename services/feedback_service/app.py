"""Feedback Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from feedbackflow.backends.migrations import SchemaVersion
from feedbackflow.backup import RestoreResult, restore_failed
from feedbackflow.config import Settings
from feedbackflow.errors import (
    BackendFailure,
    ConflictError,
    FeedbackFlowError,
    NotFoundError,
    UnsupportedOperationError,
    ValidationError,
)
from feedbackflow.factory import create_database
from feedbackflow.repositories import (
    FeedbackFlowDatabase,
    SupportsBackup,
    SupportsSchemaIntrospection,
)

# Settings
settings = Settings(service_name="feedback-service")

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

database: Optional[FeedbackFlowDatabase] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    global database

    # Startup
    logger.info("Starting Feedback Service...")
    database = await create_database(settings)
    logger.info(f"Feedback Service started with the {database.backend_name} backend")

    yield

    # Shutdown
    logger.info("Shutting down Feedback Service...")
    await database.close()
    database = None


app = FastAPI(title="Feedback Service", lifespan=lifespan)


# Response models
class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    service: str
    backend: str


class TablesResponse(BaseModel):
    """Tables of the relational schema."""
    tables: List[str]


class MigrationsResponse(BaseModel):
    """Status lines of a migration run."""
    results: List[str]


_ERROR_STATUS = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (UnsupportedOperationError, 501),
    (BackendFailure, 503),
)


@app.exception_handler(FeedbackFlowError)
async def feedbackflow_error_handler(request: Request, exc: FeedbackFlowError):
    """Map storage errors to HTTP status codes."""
    status_code = next((code for error, code in _ERROR_STATUS if isinstance(exc, error)), 500)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content={"success": False, "error": str(exc)})


def get_db() -> FeedbackFlowDatabase:
    """Get the database created at startup."""
    if database is None:
        raise HTTPException(status_code=503, detail="Database not initialized")
    return database


def require_admin(x_admin_token: Optional[str] = Header(default=None)) -> None:
    """Reject requests without the configured admin token."""
    if not settings.admin_token or x_admin_token != settings.admin_token:
        raise HTTPException(status_code=403, detail="Admin token required")


def backup_capable(db: FeedbackFlowDatabase = Depends(get_db)) -> SupportsBackup:
    if not isinstance(db, SupportsBackup):
        raise UnsupportedOperationError(
            "backup", db.backend_name, "Backup is only available for the memory and sql backends"
        )
    return db


def introspectable(db: FeedbackFlowDatabase = Depends(get_db)) -> SupportsSchemaIntrospection:
    if not isinstance(db, SupportsSchemaIntrospection):
        raise UnsupportedOperationError("schema introspection", db.backend_name)
    return db


@app.get("/health", response_model=HealthResponse)
async def health_check(db: FeedbackFlowDatabase = Depends(get_db)):
    """Health check endpoint."""
    return HealthResponse(status="healthy", service=settings.service_name, backend=db.backend_name)


@app.get("/api/backup/json", dependencies=[Depends(require_admin)])
async def download_backup(db: SupportsBackup = Depends(backup_capable)):
    """Download the whole database as one JSON document."""
    content = await db.backup_to_json()
    filename = f"feedbackflow-backup-{date.today().isoformat()}.json"
    return Response(
        content=content,
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/backup/json", response_model=RestoreResult, dependencies=[Depends(require_admin)])
async def restore_backup(request: Request, db: SupportsBackup = Depends(backup_capable)):
    """Replace the whole database with an uploaded backup."""
    body = await request.body()
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError as e:
        result = restore_failed(ValidationError(f"Backup is not valid UTF-8: {e}"))
        return JSONResponse(status_code=400, content=result.model_dump())
    result = await db.restore_from_json_string(text)
    if not result.success:
        return JSONResponse(status_code=400, content=result.model_dump())
    return result


@app.get("/api/__d1/schema", response_model=TablesResponse, dependencies=[Depends(require_admin)])
async def list_schema_tables(db: SupportsSchemaIntrospection = Depends(introspectable)):
    """List the tables of the relational schema."""
    return TablesResponse(tables=await db.list_tables())


@app.get(
    "/api/__d1/schema_version",
    response_model=SchemaVersion,
    dependencies=[Depends(require_admin)],
)
async def get_schema_version(db: SupportsSchemaIntrospection = Depends(introspectable)):
    """Get the current schema version."""
    return await db.get_schema_version()


@app.get(
    "/api/__d1/schema_migrations",
    response_model=MigrationsResponse,
    dependencies=[Depends(require_admin)],
)
async def run_schema_migrations(db: SupportsSchemaIntrospection = Depends(introspectable)):
    """Apply pending migrations."""
    return MigrationsResponse(results=await db.run_migrations())


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
