"""FastAPI app: roster versions, CSV import/export, household matching and
geocoding jobs, with JSON error responses.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime

from fastapi import Depends, FastAPI, File, HTTPException, Request, Response, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .access import (
    AccessDeniedError,
    AuthenticationRequiredError,
    UserAccess,
    require_authenticated,
    require_data_admin,
)
from .config import settings
from .db import AsyncSessionMaker, get_session, get_session_factory
from .geocoder import NominatimGeocoder, create_http_client
from .logging_config import setup_logging
from .models import GeocodingJobStatus
from .parsers import ParseError
from .pipelines.export import VoterExportError, export_voters_csv
from .pipelines.geocoding import (
    GeocodingJobEngine,
    GeocodingJobNotFoundError,
    InvalidJobStateError,
    NothingToGeocodeError,
)
from .pipelines.ingest import ImportResult, import_voters_chunk, import_voters_from_csv
from .pipelines.matching import MatchingError, match_voters_with_households
from .pipelines.versions import (
    RosterVersionError,
    RosterVersionNotFoundError,
    clear_version_voters,
    create_version,
    list_versions,
    update_version,
)

logger = logging.getLogger(__name__)


# Pydantic request/response models
class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: str | None = None


class VersionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str | None = None
    election_date: date | None = None
    is_active: bool
    created_by: int | None = None
    created_at: datetime
    updated_at: datetime


class CreateVersionRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    election_date: date | None = None
    is_active: bool = False


class UpdateVersionRequest(BaseModel):
    """Fields left out are unchanged."""
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    election_date: date | None = None
    is_active: bool | None = None


class ClearVotersResponse(BaseModel):
    version_id: int
    deleted: int


class ImportResponse(BaseModel):
    """Outcome of a CSV import call."""
    imported: int
    failed: int
    errors: list[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: ImportResult) -> ImportResponse:
        return cls(imported=result.imported, failed=result.failed, errors=result.errors)


class ImportChunkRequest(BaseModel):
    """One slice of a CSV file, parsed against the file's header."""
    header_map: dict[str, int]
    lines: list[str]
    row_offset: int = Field(default=1, ge=1, description="File lines before this chunk, header included")
    skip_version_check: bool = False


class MatchResponse(BaseModel):
    version_id: int
    matched: int
    unmatched: int
    total: int


class GeocodingJobResponse(BaseModel):
    """Geocoding job progress for pollers."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    version_id: int
    status: GeocodingJobStatus
    total_voters: int
    processed_voters: int
    geocoded_count: int
    failed_count: int
    skipped_count: int
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    # Startup
    setup_logging()
    logger.info(f"{settings.app_name} v{settings.version} starting up")

    http_client = create_http_client()
    engine = GeocodingJobEngine(AsyncSessionMaker, NominatimGeocoder(http_client))
    app.state.geocoding_engine = engine

    if settings.geocoding.resume_interrupted_jobs:
        await engine.recover_interrupted()

    yield

    # Shutdown
    logger.info("Application shutting down")
    await engine.shutdown()
    await http_client.aclose()


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Electoral-roll import, household matching and address geocoding",
    docs_url="/docs" if settings.docs_enabled else None,
    redoc_url="/redoc" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.docs_enabled else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:3001"],  # Frontend URLs
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_geocoding_engine(request: Request) -> GeocodingJobEngine:
    """The engine created by the lifespan handler."""
    return request.app.state.geocoding_engine


# Exception handlers
def _error_response(status_code: int, error: str, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=str(exc)).model_dump(),
    )


@app.exception_handler(ParseError)
async def parse_error_handler(request, exc: ParseError):
    """Handle CSV structure errors (empty file, missing column)."""
    logger.warning(f"Import rejected: {exc}")
    return _error_response(status.HTTP_400_BAD_REQUEST, "import_error", exc)


@app.exception_handler(RosterVersionNotFoundError)
async def version_not_found_handler(request, exc: RosterVersionNotFoundError):
    return _error_response(status.HTTP_404_NOT_FOUND, "version_not_found", exc)


@app.exception_handler(RosterVersionError)
async def version_error_handler(request, exc: RosterVersionError):
    return _error_response(status.HTTP_400_BAD_REQUEST, "version_error", exc)


@app.exception_handler(VoterExportError)
async def export_error_handler(request, exc: VoterExportError):
    return _error_response(status.HTTP_404_NOT_FOUND, "export_error", exc)


@app.exception_handler(MatchingError)
async def matching_error_handler(request, exc: MatchingError):
    """Handle matching pipeline errors."""
    logger.error(f"Matching error: {exc}")
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "matching_error", exc)


@app.exception_handler(NothingToGeocodeError)
async def nothing_to_geocode_handler(request, exc: NothingToGeocodeError):
    return _error_response(status.HTTP_400_BAD_REQUEST, "nothing_to_geocode", exc)


@app.exception_handler(GeocodingJobNotFoundError)
async def job_not_found_handler(request, exc: GeocodingJobNotFoundError):
    return _error_response(status.HTTP_404_NOT_FOUND, "job_not_found", exc)


@app.exception_handler(InvalidJobStateError)
async def invalid_job_state_handler(request, exc: InvalidJobStateError):
    return _error_response(status.HTTP_409_CONFLICT, "invalid_job_state", exc)


@app.exception_handler(AuthenticationRequiredError)
async def authentication_error_handler(request, exc: AuthenticationRequiredError):
    return _error_response(status.HTTP_401_UNAUTHORIZED, "authentication_required", exc)


@app.exception_handler(AccessDeniedError)
async def access_denied_handler(request, exc: AccessDeniedError):
    logger.warning(f"Access denied on {request.url.path}")
    return _error_response(status.HTTP_403_FORBIDDEN, "access_denied", exc)


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", version=settings.version)


# Roster versions

@app.get("/versions", response_model=list[VersionResponse])
async def get_versions(
    access: UserAccess = Depends(require_authenticated),
    session: AsyncSession = Depends(get_session),
) -> list[VersionResponse]:
    versions = await list_versions(session)
    return [VersionResponse.model_validate(v) for v in versions]


@app.post("/versions", response_model=VersionResponse, status_code=status.HTTP_201_CREATED)
async def post_version(
    request: CreateVersionRequest,
    access: UserAccess = Depends(require_data_admin),
    session: AsyncSession = Depends(get_session),
) -> VersionResponse:
    version = await create_version(
        session,
        name=request.name,
        description=request.description,
        election_date=request.election_date,
        is_active=request.is_active,
        created_by=access.staff_id,
    )
    return VersionResponse.model_validate(version)


@app.patch("/versions/{version_id}", response_model=VersionResponse)
async def patch_version(
    version_id: int,
    request: UpdateVersionRequest,
    access: UserAccess = Depends(require_data_admin),
    session: AsyncSession = Depends(get_session),
) -> VersionResponse:
    version = await update_version(
        session,
        version_id,
        name=request.name,
        description=request.description,
        election_date=request.election_date,
        is_active=request.is_active,
    )
    return VersionResponse.model_validate(version)


@app.delete("/versions/{version_id}/voters", response_model=ClearVotersResponse)
async def delete_version_voters(
    version_id: int,
    access: UserAccess = Depends(require_data_admin),
    session: AsyncSession = Depends(get_session),
) -> ClearVotersResponse:
    deleted = await clear_version_voters(session, version_id)
    return ClearVotersResponse(version_id=version_id, deleted=deleted)


# Voter import / export

@app.post("/versions/{version_id}/voters/import", response_model=ImportResponse)
async def import_voters(
    version_id: int,
    file: UploadFile = File(..., description="Electoral-roll CSV export"),
    access: UserAccess = Depends(require_data_admin),
    session: AsyncSession = Depends(get_session),
) -> ImportResponse:
    """Import a whole CSV file into a version.

    Row problems are reported in the response; structural problems (empty
    file, missing name column, unknown version) reject the upload.
    """
    if not file.filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Filename is required",
        )

    logger.info(f"Received roll upload for version {version_id}: {file.filename}")

    try:
        content = (await file.read()).decode("utf-8", errors="replace")
        result = await import_voters_from_csv(session, version_id, content)
    finally:
        await file.close()

    return ImportResponse.from_result(result)


@app.post("/versions/{version_id}/voters/import-chunk", response_model=ImportResponse)
async def import_voters_chunked(
    version_id: int,
    request: ImportChunkRequest,
    access: UserAccess = Depends(require_data_admin),
    session: AsyncSession = Depends(get_session),
) -> ImportResponse:
    result = await import_voters_chunk(
        session,
        version_id,
        request.header_map,
        request.lines,
        row_offset=request.row_offset,
        skip_version_check=request.skip_version_check,
    )
    return ImportResponse.from_result(result)


@app.get("/versions/{version_id}/voters/export")
async def export_voters(
    version_id: int,
    access: UserAccess = Depends(require_data_admin),
    session: AsyncSession = Depends(get_session),
) -> Response:
    csv_text = await export_voters_csv(session, version_id)
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="voters-{version_id}.csv"'},
    )


# Household matching

@app.post("/versions/{version_id}/household-matches", response_model=MatchResponse)
async def match_households(
    version_id: int,
    access: UserAccess = Depends(require_data_admin),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> MatchResponse:
    stats = await match_voters_with_households(session_factory, version_id)
    return MatchResponse(
        version_id=version_id,
        matched=stats.matched,
        unmatched=stats.unmatched,
        total=stats.total,
    )


# Geocoding jobs

@app.post(
    "/versions/{version_id}/geocoding-jobs",
    response_model=GeocodingJobResponse,
    status_code=status.HTTP_201_CREATED,
)
async def start_geocoding(
    version_id: int,
    response: Response,
    access: UserAccess = Depends(require_data_admin),
    engine: GeocodingJobEngine = Depends(get_geocoding_engine),
) -> GeocodingJobResponse:
    """Start geocoding a version; returns the active job when one exists."""
    job, created = await engine.start_job(version_id, created_by=access.staff_id)
    if not created:
        response.status_code = status.HTTP_200_OK
    return GeocodingJobResponse.model_validate(job)


@app.get("/versions/{version_id}/geocoding-jobs/latest", response_model=GeocodingJobResponse | None)
async def latest_geocoding_job(
    version_id: int,
    access: UserAccess = Depends(require_authenticated),
    engine: GeocodingJobEngine = Depends(get_geocoding_engine),
) -> GeocodingJobResponse | None:
    job = await engine.latest_job(version_id)
    return GeocodingJobResponse.model_validate(job) if job is not None else None


@app.get("/geocoding-jobs/{job_id}", response_model=GeocodingJobResponse)
async def get_geocoding_job(
    job_id: int,
    access: UserAccess = Depends(require_authenticated),
    engine: GeocodingJobEngine = Depends(get_geocoding_engine),
) -> GeocodingJobResponse:
    job = await engine.get_job(job_id)
    return GeocodingJobResponse.model_validate(job)


@app.post("/geocoding-jobs/{job_id}/pause", response_model=GeocodingJobResponse)
async def pause_geocoding_job(
    job_id: int,
    access: UserAccess = Depends(require_data_admin),
    engine: GeocodingJobEngine = Depends(get_geocoding_engine),
) -> GeocodingJobResponse:
    job = await engine.pause_job(job_id)
    return GeocodingJobResponse.model_validate(job)


@app.post("/geocoding-jobs/{job_id}/resume", response_model=GeocodingJobResponse)
async def resume_geocoding_job(
    job_id: int,
    access: UserAccess = Depends(require_data_admin),
    engine: GeocodingJobEngine = Depends(get_geocoding_engine),
) -> GeocodingJobResponse:
    job = await engine.resume_job(job_id)
    return GeocodingJobResponse.model_validate(job)
