"""
GET /schema, GET /metrics -- metadata and operational endpoints.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from whatcar.api.deps import get_query_service
from whatcar.copilot.service import QueryService
from whatcar.core.logging import get_logger
from whatcar.core.metrics import InMemoryMetrics, get_metrics

logger = get_logger(__name__)
router = APIRouter()


class SchemaResponse(BaseModel):
    summary: str
    allowed_entity_sets: list[str]


@router.get("/schema", response_model=SchemaResponse)
async def schema_endpoint(service: QueryService = Depends(get_query_service)) -> SchemaResponse:
    """Return the schema summary given to the model and the queryable entity sets."""
    try:
        summary = await service.summarizer.generate_summary()
    except Exception as exc:
        logger.exception("Schema summary unavailable")
        raise HTTPException(status_code=500, detail=str(exc))
    return SchemaResponse(summary=summary, allowed_entity_sets=list(service.allowed_entity_sets))


@router.get("/metrics")
def metrics_endpoint(metrics: InMemoryMetrics = Depends(get_metrics)) -> dict:
    """Return counters, histogram summaries and cache hit rates."""
    return metrics.snapshot()
