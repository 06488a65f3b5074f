"""
Query service -- orchestrates schema -> prompt -> model -> envelope checks -> execute -> field checks.

Two entry points share the planning half of the pipeline:

  ask          -- buffered: executes, resolves the result type and validates
                  the returned rows before handing them back
  open_stream  -- streaming: executes and returns the open downstream
                  response; rows are relayed unvalidated

Rejections raise the typed errors in ``whatcar.core.errors`` and never reach
the data service.  Catalog and model failures propagate unchanged.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

import httpx

from whatcar.copilot.gateway import ModelGateway
from whatcar.copilot.prompt_builder import build_prompt
from whatcar.copilot.result_type import ResultType, normalize_result_type
from whatcar.copilot.schema_summarizer import SchemaSummarizer
from whatcar.core.errors import EnvelopeRejectedError, ResultFieldsError
from whatcar.core.logging import get_logger
from whatcar.core.metrics import MetricsRecorder
from whatcar.db.executor import ODataExecutor
from whatcar.governance.allowlist import DEFAULT_ALLOWED_ENTITY_SETS
from whatcar.governance.envelope_validator import InvalidEnvelopeFormat, validate_envelope
from whatcar.governance.result_validator import validate_result

logger = get_logger(__name__)

FIELDS_MISSING_PREFIX = "Query succeeded but data is missing required fields."


@dataclass(frozen=True)
class PlannedQuery:
    question: str
    query: str
    declared_result_type: str | None

    @property
    def result_type(self) -> ResultType:
        return normalize_result_type(self.declared_result_type, self.query)


@dataclass(frozen=True)
class QueryResult:
    result_type: ResultType
    data: Any
    query: str


@dataclass
class StreamingResult:
    result_type: ResultType
    query: str
    response: httpx.Response


class QueryService:
    def __init__(
        self,
        summarizer: SchemaSummarizer,
        gateway: ModelGateway,
        executor: ODataExecutor,
        metrics: MetricsRecorder,
        allowed_entity_sets: Iterable[str] = DEFAULT_ALLOWED_ENTITY_SETS,
    ):
        self._summarizer = summarizer
        self._gateway = gateway
        self._executor = executor
        self._metrics = metrics
        self._allowed = tuple(allowed_entity_sets)

    @property
    def allowed_entity_sets(self) -> tuple[str, ...]:
        return self._allowed

    @property
    def summarizer(self) -> SchemaSummarizer:
        return self._summarizer

    async def plan(self, question: str) -> PlannedQuery:
        """Turn *question* into an accepted query without touching the data service.

        Raises
        ------
        EnvelopeRejectedError
            When the model output is empty, malformed, a refusal, or targets
            an entity set outside the allowlist.
        """
        schema = await self._summarizer.generate_summary()
        prompt = build_prompt(question, schema)
        raw = await self._gateway.generate(prompt.system_prompt, prompt.user_prompt, schema)

        try:
            envelope = validate_envelope(raw, self._allowed)
        except InvalidEnvelopeFormat:
            self._metrics.increment("llm_invalid_response")
            logger.warning("Rejected model output for question: %s", question)
            raise
        except EnvelopeRejectedError as exc:
            logger.warning("Rejected question: %s (%s)", question, exc.message)
            raise

        planned = PlannedQuery(question, envelope.query.strip(), envelope.result_type)
        logger.info("Planned query for question %r: %s (%s)", question, planned.query, planned.result_type.value)
        return planned

    async def ask(self, question: str) -> QueryResult:
        """Buffered pipeline: question -> validated rows.

        Raises
        ------
        ResultFieldsError
            When the rows lack the fields the resolved result type needs.
        QueryExecutionError, DataServiceUnavailableError, QueryTimeoutError
            As raised by the executor.
        """
        planned = await self.plan(question)
        logger.info("Executing OData query: %s", planned.query)
        data = await self._executor.execute(planned.query)

        result_type = planned.result_type
        outcome = validate_result(result_type, data)
        if not outcome.is_valid:
            logger.warning(
                "Data validation failed for resultType '%s': %s (question=%r, query=%s)",
                result_type.value, outcome.error_message, question, planned.query,
            )
            raise ResultFieldsError(
                f"{FIELDS_MISSING_PREFIX} {outcome.error_message}",
                planned.query,
                result_type.value,
            )

        logger.info("Success: %s -> %s", question, result_type.value)
        return QueryResult(result_type, data, planned.query)

    async def open_stream(self, question: str) -> StreamingResult:
        """Streaming pipeline: question -> open downstream response.

        The caller must drain or close ``response``; see :meth:`ODataExecutor.relay`.
        """
        planned = await self.plan(question)
        logger.info("Executing OData query (streaming): %s", planned.query)
        response = await self._executor.open_stream(planned.query)
        result_type = planned.result_type
        logger.info("Success (streaming): %s -> %s", question, result_type.value)
        return StreamingResult(result_type, planned.query, response)

    def relay(self, streaming: StreamingResult):
        return self._executor.relay(streaming.response)
