"""TaskVec REST API — FastAPI application factory.

Endpoints:
  POST   /embeddings/search                  (similarity search)
  POST   /embeddings                         (batch ingestion, 202)
  GET    /embeddings/{record_id}/status      (lifecycle state)
  POST   /embeddings/{record_id}/reprocess   (manual retry)
  DELETE /parents/{parent_id}/embeddings     (cascade delete)

Error responses, including malformed bodies, carry ``{"detail": {"code": ..., "message": ...}}``.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from taskvec._taskvec_async import TaskVecAsync
from taskvec.exceptions import (
    InvalidTransitionError,
    QueryEmbeddingUnavailableError,
    RecordNotFoundError,
    SchedulerClosedError,
    SearchTimeoutError,
    StorageUnavailableError,
    ValidationError,
)
from taskvec.generation._generator import GenerationErrorKind
from taskvec.types import DEFAULT_LIMIT, DEFAULT_THRESHOLD

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------


class SearchRequest(BaseModel):
    query: str
    limit: int = DEFAULT_LIMIT
    threshold: float = DEFAULT_THRESHOLD


class SearchHitResponse(BaseModel):
    record_id: str
    text: str
    parent_id: str
    similarity: float
    created_at: datetime | None = None


class SearchResponse(BaseModel):
    results: list[SearchHitResponse]
    query: str
    count: int


class IngestRequest(BaseModel):
    parent_id: str
    texts: list[str] = Field(..., min_length=1)


class JobResponse(BaseModel):
    job_id: str
    parent_id: str
    accepted: int
    skipped: int
    record_ids: list[str]


class StatusResponse(BaseModel):
    record_id: str
    status: str
    error_message: str | None = None
    updated_at: datetime | None = None


class DeleteResponse(BaseModel):
    parent_id: str
    deleted: int


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code, detail={"code": code, "message": message})


def _query_embedding_error(exc: QueryEmbeddingUnavailableError) -> HTTPException:
    if exc.kind == GenerationErrorKind.INVALID_RESPONSE.value:
        return _error(500, "EMBEDDING_GENERATION_FAILED", str(exc))
    return _error(503, "EMBEDDING_SERVICE_UNAVAILABLE", str(exc))


def _describe_validation(exc: RequestValidationError) -> str:
    """Flatten pydantic errors into one line, e.g. ``body.query: Field required``."""
    parts = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()))
        parts.append(f"{location}: {err.get('msg', 'invalid value')}")
    return "; ".join(parts) or "Invalid request body"


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def _get_pipeline(request: Request) -> TaskVecAsync:
    """Dependency: resolve the pipeline created in the app lifespan."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise _error(503, "SERVICE_NOT_READY", "Pipeline not initialised")
    return pipeline


Pipeline = Annotated[TaskVecAsync, Depends(_get_pipeline)]


def create_app(pipeline_factory: Callable[[], Awaitable[TaskVecAsync]]) -> FastAPI:
    """Build the API around a pipeline created at startup.

    *pipeline_factory* is awaited inside the application's lifespan so the
    pipeline's background jobs share the server's event loop; the
    pipeline is closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.pipeline = await pipeline_factory()
        try:
            yield
        finally:
            await app.state.pipeline.close()
            app.state.pipeline = None

    app = FastAPI(
        title="TaskVec API",
        version="0.1.0",
        description="Embedding generation and similarity search for tasks.",
        lifespan=lifespan,
    )

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        code = "INVALID_QUERY" if request.url.path.endswith("/embeddings/search") else "INVALID_REQUEST"
        return JSONResponse(
            status_code=400,
            content={"detail": {"code": code, "message": _describe_validation(exc)}},
        )

    @app.post("/embeddings/search", response_model=SearchResponse)
    async def search(req: SearchRequest, pipeline: Pipeline) -> SearchResponse:
        try:
            response = await pipeline.search(req.query, threshold=req.threshold, limit=req.limit)
        except ValidationError as exc:
            raise _error(400, "INVALID_QUERY", str(exc)) from exc
        except QueryEmbeddingUnavailableError as exc:
            raise _query_embedding_error(exc) from exc
        except SearchTimeoutError as exc:
            raise _error(504, "SEARCH_TIMEOUT", str(exc)) from exc
        except StorageUnavailableError as exc:
            raise _error(500, "DATABASE_ERROR", str(exc)) from exc

        return SearchResponse(
            results=[
                SearchHitResponse(
                    record_id=hit.record_id,
                    text=hit.text,
                    parent_id=hit.parent_id,
                    similarity=hit.similarity,
                    created_at=hit.created_at,
                )
                for hit in response.results
            ],
            query=response.query,
            count=response.count,
        )

    @app.post("/embeddings", response_model=JobResponse, status_code=202)
    async def ingest(req: IngestRequest, pipeline: Pipeline) -> JobResponse:
        try:
            handle = await pipeline.enqueue(req.texts, req.parent_id)
        except ValidationError as exc:
            raise _error(400, "INVALID_REQUEST", str(exc)) from exc
        except SchedulerClosedError as exc:
            raise _error(503, "SERVICE_SHUTTING_DOWN", str(exc)) from exc
        except StorageUnavailableError as exc:
            raise _error(500, "DATABASE_ERROR", str(exc)) from exc

        return JobResponse(
            job_id=handle.job_id,
            parent_id=handle.parent_id,
            accepted=handle.total - handle.skipped,
            skipped=handle.skipped,
            record_ids=handle.record_ids,
        )

    @app.get("/embeddings/{record_id}/status", response_model=StatusResponse)
    async def get_status(record_id: str, pipeline: Pipeline) -> StatusResponse:
        try:
            info = await pipeline.get_status(record_id)
        except RecordNotFoundError as exc:
            raise _error(404, "NOT_FOUND", str(exc)) from exc
        except StorageUnavailableError as exc:
            raise _error(500, "DATABASE_ERROR", str(exc)) from exc

        return StatusResponse(
            record_id=info.record_id,
            status=info.status.value,
            error_message=info.error_message,
            updated_at=info.updated_at,
        )

    @app.post("/embeddings/{record_id}/reprocess", response_model=JobResponse, status_code=202)
    async def reprocess(record_id: str, pipeline: Pipeline) -> JobResponse:
        try:
            handle = await pipeline.reprocess(record_id)
        except RecordNotFoundError as exc:
            raise _error(404, "NOT_FOUND", str(exc)) from exc
        except InvalidTransitionError as exc:
            raise _error(409, "INVALID_TRANSITION", str(exc)) from exc
        except SchedulerClosedError as exc:
            raise _error(503, "SERVICE_SHUTTING_DOWN", str(exc)) from exc
        except StorageUnavailableError as exc:
            raise _error(500, "DATABASE_ERROR", str(exc)) from exc

        return JobResponse(
            job_id=handle.job_id,
            parent_id=handle.parent_id,
            accepted=handle.total - handle.skipped,
            skipped=handle.skipped,
            record_ids=handle.record_ids,
        )

    @app.delete("/parents/{parent_id}/embeddings", response_model=DeleteResponse)
    async def delete_parent(parent_id: str, pipeline: Pipeline) -> DeleteResponse:
        try:
            deleted = await pipeline.delete_parent(parent_id)
        except StorageUnavailableError as exc:
            raise _error(500, "DATABASE_ERROR", str(exc)) from exc
        return DeleteResponse(parent_id=parent_id, deleted=deleted)

    return app
