"""FastAPI trigger surface: ingest, parse, cron triggers and health.

The app is a thin shell over the pipelines and the workflow engine. Every
PipelineError is mapped to a status code by its classification: 422 for bad
input, 503 for "try again later", 409 when a workflow is already running.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request, Security, status
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field, model_validator

from jobstream.config import Settings, settings as app_settings
from jobstream.domain import RawPosting, ResumeDocumentRef
from jobstream.errors import Classification, ErrorKind, PipelineError
from jobstream.logging_config import setup_logging
from jobstream.services import Services, build_services

logger = logging.getLogger(__name__)

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


# Pydantic request/response models
class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    workflows: dict[str, str | None] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    classification: str
    detail: str | None = None
    failures: list[dict] | None = None


class IngestJobRequest(BaseModel):
    """Raw posting to ingest: its text, or just its URL to fetch."""
    text: str | None = Field(default=None, min_length=1)
    url: str | None = None
    company_domain: str | None = None
    title_hint: str | None = None
    profile_id: str | None = None
    source: str = "api"
    create_application: bool = False
    notes: str | None = None

    @model_validator(mode="after")
    def check_inputs(self) -> IngestJobRequest:
        if not self.text and not self.url:
            raise ValueError("either text or url is required")
        if self.create_application and not self.profile_id:
            raise ValueError("create_application requires profile_id")
        return self


class IngestJobResponse(BaseModel):
    status: str
    run_id: str
    job_id: int
    company_id: int | None
    title: str
    created: bool
    used_fallback: bool
    application_id: int | None = None
    duration_ms: int


class ParseResumeRequest(BaseModel):
    file_id: str = Field(min_length=1)
    profile_id: str = Field(min_length=1)
    filename: str | None = None
    content_type: str | None = None


class ParseResumeResponse(BaseModel):
    status: str
    run_id: str
    resume_id: int
    file_id: str
    profile_id: str
    resume_data: dict
    duration_ms: int


class StatusCheckRequest(BaseModel):
    profile_id: str | None = None


class TriggerResponse(BaseModel):
    """Accepted workflow trigger."""
    status: str
    workflow: str
    invocation_id: str


def error_status_code(exc: PipelineError) -> int:
    if exc.kind == ErrorKind.SINGLE_FLIGHT_REJECTED:
        return status.HTTP_409_CONFLICT
    if exc.classification == Classification.TRY_AGAIN_LATER:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_422_UNPROCESSABLE_ENTITY


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    """Handle every jobstream failure."""
    code = error_status_code(exc)
    logger.warning(
        f"{request.method} {request.url.path} failed: {exc.kind.value}: {exc.message}",
        extra={"failure_kind": exc.kind.value, "classification": exc.classification.value},
    )
    failures = [f.to_dict() for f in getattr(exc, "failures", [])] or None
    return JSONResponse(
        status_code=code,
        content=ErrorResponse(
            error=exc.kind.value,
            classification=exc.classification.value,
            detail=exc.message,
            failures=failures,
        ).model_dump(exclude_none=True),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_api_key(request: Request, api_key: str | None = Security(api_key_header)) -> None:
    """Reject requests without a configured API key. No keys configured means open."""
    keys = request.app.state.settings.api.keys
    if keys and api_key not in keys:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing API key")


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """Build the FastAPI app.

    Args:
        settings: Application settings (defaults to the environment)
        services: Prebuilt service graph; built in the lifespan when omitted

    Returns:
        Configured FastAPI application
    """
    settings = settings or (services.settings if services else app_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build services on startup, drain and close them on shutdown."""
        setup_logging(settings)
        logger.info(f"{settings.app_name} v{settings.version} starting up")
        app.state.services = services or build_services(settings)
        await app.state.services.start()

        yield

        logger.info("Application shutting down")
        await app.state.services.aclose()

    app = FastAPI(
        title="jobstream",
        version=settings.version,
        description="Job ingestion, resume parsing and workflow triggers",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.add_exception_handler(PipelineError, pipeline_error_handler)

    @app.get("/health", response_model=HealthResponse)
    async def health(services: Services = Depends(get_services)) -> HealthResponse:
        """Health check endpoint with the last outcome of each workflow."""
        workflows = {}
        for name in services.engine.workflows:
            record = services.engine.last_record(name)
            workflows[name] = record.status.value if record else None
        return HealthResponse(status="ok", version=settings.version, workflows=workflows)

    @app.post(
        "/jobs/ingest",
        response_model=IngestJobResponse,
        status_code=status.HTTP_201_CREATED,
        dependencies=[Depends(require_api_key)],
    )
    async def ingest_job(
        request: IngestJobRequest,
        services: Services = Depends(get_services),
    ) -> IngestJobResponse:
        """Extract, resolve and persist one raw posting.

        Returns 201 with the stored job; re-ingesting the same posting merges
        into the existing record (``created`` is false). With only a URL the
        page is fetched first.
        """
        result = await services.ingestion.ingest_job(RawPosting(**request.model_dump()))
        job = result.unwrap()
        return IngestJobResponse(
            status="success",
            run_id=result.run_id,
            job_id=job.job_id,
            company_id=job.company_id,
            title=job.title,
            created=result.created,
            used_fallback=result.used_fallback,
            application_id=result.application.application_id if result.application else None,
            duration_ms=result.duration_ms,
        )

    @app.post(
        "/resumes/parse",
        response_model=ParseResumeResponse,
        status_code=status.HTTP_201_CREATED,
        dependencies=[Depends(require_api_key)],
    )
    async def parse_resume(
        request: ParseResumeRequest,
        services: Services = Depends(get_services),
    ) -> ParseResumeResponse:
        """Fetch a résumé from object storage, parse it and store the result."""
        result = await services.resumes.parse_resume(ResumeDocumentRef(**request.model_dump()))
        resume = result.unwrap()
        return ParseResumeResponse(
            status="success",
            run_id=result.run_id,
            resume_id=resume.resume_id,
            file_id=resume.file_id,
            profile_id=resume.profile_id,
            resume_data=resume.to_json_dict(),
            duration_ms=result.duration_ms,
        )

    @app.post(
        "/cron/discovery",
        response_model=TriggerResponse,
        status_code=status.HTTP_202_ACCEPTED,
        dependencies=[Depends(require_api_key)],
    )
    async def trigger_discovery(services: Services = Depends(get_services)) -> TriggerResponse:
        """Start the discovery workflow. 409 while a run is in progress."""
        invocation = await services.engine.trigger("discovery", source="api")
        return TriggerResponse(status="accepted", workflow="discovery", invocation_id=invocation.invocation_id)

    @app.post(
        "/cron/status-check",
        response_model=TriggerResponse,
        status_code=status.HTTP_202_ACCEPTED,
        dependencies=[Depends(require_api_key)],
    )
    async def trigger_status_check(
        request: StatusCheckRequest | None = None,
        services: Services = Depends(get_services),
    ) -> TriggerResponse:
        """Start the status workflow, for one profile or for all."""
        params = {"profile_id": request.profile_id} if request and request.profile_id else {}
        invocation = await services.engine.trigger("status-check", source="api", params=params)
        return TriggerResponse(status="accepted", workflow="status-check", invocation_id=invocation.invocation_id)

    @app.get("/cron/{workflow}/last", dependencies=[Depends(require_api_key)])
    async def last_invocation(workflow: str, services: Services = Depends(get_services)) -> dict:
        """Last finished (or rejected) invocation of a workflow."""
        if workflow not in services.engine.workflows:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown workflow {workflow}")
        record = services.engine.last_record(workflow)
        if record is None:
            return {"workflow": workflow, "status": None, "running": services.engine.is_running(workflow)}
        data = record.to_dict()
        data["running"] = services.engine.is_running(workflow)
        return data

    return app


app = create_app()

__all__ = ["app", "create_app", "error_status_code"]
