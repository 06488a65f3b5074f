"""
Typed failures raised by the query pipeline.

The HTTP layer maps each class to a status code:

  ClientInputError             -> 400
  QueryExecutionError          -> 400 (with ``details``)
  DataServiceUnavailableError  -> 502
  QueryTimeoutError            -> 504

Client cancellation is not modelled here: ``asyncio.CancelledError`` is left
to propagate and the router answers 499.
"""
from __future__ import annotations


class WhatCarError(Exception):
    """Base class for every pipeline failure."""


class ClientInputError(WhatCarError):
    """The question could not be turned into an acceptable query or result."""


class EnvelopeRejectedError(ClientInputError):
    """Model output was empty, malformed, a refusal, or targeted a disallowed entity set."""

    def __init__(self, message: str, raw_text: str | None = None):
        super().__init__(message)
        self.message = message
        self.raw_text = raw_text


class ResultFieldsError(ClientInputError):
    """The query ran but the rows lack the fields required by the result type."""

    def __init__(self, message: str, query: str, result_type: str):
        super().__init__(message)
        self.message = message
        self.query = query
        self.result_type = result_type


class QueryExecutionError(WhatCarError):
    """Downstream answered with a non-success status or an unreadable body."""


class DataServiceUnavailableError(WhatCarError):
    """Connection-level failure reaching the data service, or the circuit is open."""


class QueryTimeoutError(WhatCarError):
    """An attempt or the whole request exceeded its time budget."""

    def __init__(self, message: str, elapsed_ms: int):
        super().__init__(message)
        self.elapsed_ms = elapsed_ms
