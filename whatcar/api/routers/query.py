"""POST /query and POST /query/stream -- natural-language question to vehicle-sales data."""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.background import BackgroundTask

from whatcar.api.deps import get_query_service
from whatcar.copilot.service import QueryService, StreamingResult
from whatcar.core.config import get_settings
from whatcar.core.errors import (
    ClientInputError,
    DataServiceUnavailableError,
    QueryExecutionError,
    QueryTimeoutError,
    ResultFieldsError,
)
from whatcar.core.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()

CLIENT_CLOSED_REQUEST = 499

MSG_TIMEOUT = "The query took too long to execute. Try narrowing your question or adding filters."
MSG_UNAVAILABLE = "Unable to connect to the data service."
MSG_EXECUTION_FAILED = "Failed to execute generated query."


class QueryRequest(BaseModel):
    question: str = Field(..., description="Natural-language question about vehicle sales")


class QueryResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    result_type: str = Field(..., alias="resultType", description="ranking | trend | comparison | table")
    data: Any


# ── Error mapping ───────────────────────────────────────


def error_response(exc: Exception, question: str) -> JSONResponse:
    """Map a pipeline failure to its status code and JSON error body.

    Anything that is not a pipeline failure is re-raised as a 500.
    """
    if isinstance(exc, ResultFieldsError):
        return JSONResponse(
            {"error": exc.message, "query": exc.query, "resultType": exc.result_type},
            status_code=400,
        )
    if isinstance(exc, ClientInputError):
        return JSONResponse({"error": str(exc)}, status_code=400)
    if isinstance(exc, QueryTimeoutError):
        logger.warning("Query timed out for question: %s (%s)", question, exc)
        return JSONResponse({"error": MSG_TIMEOUT, "details": str(exc)}, status_code=504)
    if isinstance(exc, DataServiceUnavailableError):
        logger.error("Data service unavailable for question: %s (%s)", question, exc)
        return JSONResponse({"error": MSG_UNAVAILABLE, "details": str(exc)}, status_code=502)
    if isinstance(exc, QueryExecutionError):
        logger.error("OData execution failed for question: %s (%s)", question, exc)
        return JSONResponse({"error": MSG_EXECUTION_FAILED, "details": str(exc)}, status_code=400)

    logger.exception("Query pipeline failed for question: %s", question)
    raise HTTPException(status_code=500, detail=str(exc)) from exc


async def run_until_disconnect(request: Request, work: Awaitable[Any], poll_seconds: float) -> Any:
    """Await *work*, cancelling it if the client goes away first.

    Returns the result of *work*, or an empty 499 response on disconnect.
    """
    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=poll_seconds)
            if done:
                return task.result()
            if await request.is_disconnected():
                break
    except asyncio.CancelledError:
        task.cancel()
        raise

    task.cancel()
    try:
        leftover = await task
    except asyncio.CancelledError:
        leftover = None
    except Exception:
        logger.debug("Pipeline failed while being cancelled", exc_info=True)
        leftover = None
    # The work may have finished while the disconnect was being checked.
    if isinstance(leftover, StreamingResult):
        await leftover.response.aclose()
    return Response(status_code=CLIENT_CLOSED_REQUEST)


# ── Endpoints ───────────────────────────────────────────


@router.post("", response_model=QueryResponse)
async def query_endpoint(
    req: QueryRequest,
    request: Request,
    service: QueryService = Depends(get_query_service),
):
    """Buffered pipeline: question -> OData query -> validated rows."""

    async def _ask():
        try:
            result = await service.ask(req.question)
        except Exception as exc:
            return error_response(exc, req.question)
        return QueryResponse(result_type=result.result_type.value, data=result.data)

    outcome = await run_until_disconnect(request, _ask(), get_settings().disconnect_poll_seconds)
    if isinstance(outcome, Response) and outcome.status_code == CLIENT_CLOSED_REQUEST:
        logger.info("Request cancelled by client for question: %s", req.question)
    return outcome


@router.post("/stream")
async def query_stream_endpoint(
    req: QueryRequest,
    request: Request,
    service: QueryService = Depends(get_query_service),
):
    """Streaming pipeline: downstream bytes are relayed as they arrive.

    The result type travels in the ``X-Result-Type`` header.  Failures before
    the first byte use the same status codes and bodies as the buffered
    endpoint; a failure mid-body closes the connection.
    """

    async def _open():
        try:
            return await service.open_stream(req.question)
        except Exception as exc:
            return error_response(exc, req.question)

    outcome = await run_until_disconnect(request, _open(), get_settings().disconnect_poll_seconds)
    if isinstance(outcome, Response):
        if outcome.status_code == CLIENT_CLOSED_REQUEST:
            logger.info("Request cancelled by client (streaming) for question: %s", req.question)
        return outcome

    return StreamingResponse(
        service.relay(outcome),
        media_type="application/json",
        headers={"X-Result-Type": outcome.result_type.value},
        background=BackgroundTask(outcome.response.aclose),
    )
