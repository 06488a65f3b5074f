"""
Validates raw model output before anything reaches the data service.

Checks performed (first failure wins):
  1. Output is not empty / whitespace
  2. Output parses as a JSON object of the envelope shape
  3. Parsed value is not JSON ``null``
  4. ``error`` is blank -- otherwise the model's refusal is surfaced verbatim
  5. ``query`` is present and not blank
  6. The query targets an allowed entity set
"""
from __future__ import annotations

import json
from typing import Any, Iterable

from pydantic import ValidationError

from whatcar.copilot.envelope import QueryEnvelope
from whatcar.core.errors import EnvelopeRejectedError
from whatcar.core.logging import get_logger
from whatcar.governance.allowlist import (
    DEFAULT_ALLOWED_ENTITY_SETS,
    disallowed_entity_message,
    is_allowed_entity_set,
)

logger = get_logger(__name__)

MSG_EMPTY = "The assistant did not produce a valid query."
MSG_INVALID_FORMAT = "Invalid JSON format from assistant."
MSG_NO_RESPONSE = "The assistant did not provide a valid response."
MSG_NO_QUERY = "The assistant did not provide a query."

# JSON property names are matched case-insensitively.
_FIELD_NAMES = {"query": "query", "resulttype": "resultType", "error": "error"}


class InvalidEnvelopeFormat(EnvelopeRejectedError):
    """Rejections caused by the shape of the model output (not a refusal or policy)."""


def parse_envelope(raw_text: str) -> QueryEnvelope | None:
    """Parse model text into an envelope; ``None`` for a JSON ``null``.

    Raises
    ------
    ValueError
        If the text is not JSON or not an object with string fields.
    """
    payload: Any = json.loads(raw_text)
    if payload is None:
        return None
    if not isinstance(payload, dict):
        raise ValueError(f"Expected a JSON object, got {type(payload).__name__}")

    fields = {}
    for key, value in payload.items():
        name = _FIELD_NAMES.get(key.lower())
        if name is not None:
            fields[name] = value
    try:
        return QueryEnvelope.model_validate(fields)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc


def validate_envelope(
    raw_text: str | None,
    allowed_entity_sets: Iterable[str] = DEFAULT_ALLOWED_ENTITY_SETS,
) -> QueryEnvelope:
    """Return the envelope if it carries an acceptable query.

    Raises
    ------
    EnvelopeRejectedError
        With a user-safe message describing the first failed check.
    """
    if raw_text is None or not raw_text.strip():
        logger.warning("LLM produced no output")
        raise InvalidEnvelopeFormat(MSG_EMPTY, raw_text)

    try:
        envelope = parse_envelope(raw_text)
    except ValueError as exc:
        logger.warning("LLM output was not a valid JSON envelope (%s). Output: %s", exc, raw_text)
        raise InvalidEnvelopeFormat(MSG_INVALID_FORMAT, raw_text) from exc

    if envelope is None:
        logger.warning("LLM output deserialized to null. Output: %s", raw_text)
        raise InvalidEnvelopeFormat(MSG_NO_RESPONSE, raw_text)

    if envelope.error is not None and envelope.error.strip():
        logger.info("LLM declined the question: %s", envelope.error)
        raise EnvelopeRejectedError(envelope.error, raw_text)

    if envelope.query is None or not envelope.query.strip():
        logger.warning("LLM JSON envelope missing 'query'. Output: %s", raw_text)
        raise InvalidEnvelopeFormat(MSG_NO_QUERY, raw_text)

    allowed = list(allowed_entity_sets)
    if not is_allowed_entity_set(envelope.query, allowed):
        logger.warning("Rejected LLM query targeting disallowed entity set. Query: %s", envelope.query)
        raise EnvelopeRejectedError(disallowed_entity_message(allowed), raw_text)

    return envelope
