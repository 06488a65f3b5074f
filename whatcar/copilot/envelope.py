"""
QueryEnvelope -- the small JSON contract the model must emit.
"""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class QueryEnvelope(BaseModel):
    """Either a query (with an optional result-type hint) or an error."""

    model_config = ConfigDict(strict=True, populate_by_name=True)

    query: str | None = Field(None, description="OData query, e.g. 'SalesData?$top=5'")
    result_type: str | None = Field(
        None, alias="resultType", description="ranking | trend | comparison | table"
    )
    error: str | None = Field(None, description="Refusal text to show the user verbatim")
