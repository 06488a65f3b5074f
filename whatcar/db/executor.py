"""
OData executor -- runs validated queries against the data service.

Two modes:
  execute      -- buffered: the body is read and parsed as JSON so the rows
                  can be validated before they are returned
  open_stream  -- streaming: returns as soon as the response headers arrive;
                  ``relay`` copies the body through unmodified and always
                  releases the connection

Failures leave this module as one of the typed errors in
``whatcar.core.errors``; raw transport exceptions never escape.  Caller
cancellation (``asyncio.CancelledError``) is logged and re-raised untouched,
so it is never reported as a timeout.
"""
from __future__ import annotations

import asyncio
import json
import time
from typing import Any, AsyncIterator

import httpx

from whatcar.core.errors import DataServiceUnavailableError, QueryExecutionError, QueryTimeoutError
from whatcar.core.logging import get_logger
from whatcar.core.metrics import MetricsRecorder
from whatcar.db.resilience import (
    CircuitOpenError,
    ResiliencePolicy,
    TransientStatusError,
    is_transient_status,
)

logger = get_logger(__name__)

DEFAULT_PATH_PREFIX = "/odata/"


class ODataExecutor:
    def __init__(
        self,
        client: httpx.AsyncClient,
        policy: ResiliencePolicy,
        metrics: MetricsRecorder,
        path_prefix: str = DEFAULT_PATH_PREFIX,
    ):
        self._client = client
        self._policy = policy
        self._metrics = metrics
        self._path_prefix = path_prefix

    def build_url(self, query: str) -> str:
        """Prefix the literal query; it is not escaped here."""
        return f"{self._path_prefix}{query}"

    # ── Buffered ────────────────────────────────────────

    async def execute(self, query: str) -> Any:
        """Run *query* and return the parsed JSON document."""
        url = self.build_url(query)

        async def _attempt() -> httpx.Response:
            logger.info("ODataExecutor: sending GET %s", url)
            response = await self._client.get(url)
            logger.info("ODataExecutor: response status %d", response.status_code)
            if is_transient_status(response.status_code):
                raise TransientStatusError(response.status_code)
            return response

        response = await self._run(_attempt, query, mode="buffered")
        _raise_for_status(response.status_code)
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.error("ODataExecutor: response body is not JSON for query %s", query)
            raise QueryExecutionError(f"Data service returned invalid JSON: {exc}") from exc

    # ── Streaming ───────────────────────────────────────

    async def open_stream(self, query: str) -> httpx.Response:
        """Send *query* and return the response once headers have arrived.

        The caller owns the returned response and must close it, normally by
        iterating :meth:`relay`.
        """
        url = self.build_url(query)

        async def _attempt() -> httpx.Response:
            logger.info("ODataExecutor: sending GET (streaming) %s", url)
            request = self._client.build_request("GET", url)
            response = await self._client.send(request, stream=True)
            logger.info("ODataExecutor: response status %d", response.status_code)
            if is_transient_status(response.status_code):
                await response.aclose()
                raise TransientStatusError(response.status_code)
            return response

        response = await self._run(_attempt, query, mode="streaming")
        if response.is_error:
            await response.aclose()
            _raise_for_status(response.status_code)
        return response

    @staticmethod
    async def relay(response: httpx.Response) -> AsyncIterator[bytes]:
        """Yield body chunks as they arrive, closing the response on any exit."""
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        except httpx.TransportError as exc:
            logger.error("ODataExecutor: stream interrupted: %s", exc)
            raise DataServiceUnavailableError(f"Stream interrupted: {exc}") from exc
        finally:
            await response.aclose()

    # ── Internals ───────────────────────────────────────

    async def _run(self, attempt, query: str, mode: str) -> httpx.Response:
        start = time.perf_counter()
        try:
            return await self._policy.run(attempt)
        except asyncio.CancelledError:
            logger.info("ODataExecutor: %s query cancelled by caller after %dms", mode, _elapsed_ms(start))
            raise
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            elapsed = _elapsed_ms(start)
            logger.warning("ODataExecutor: %s query timed out after %dms: %s", mode, elapsed, query)
            raise QueryTimeoutError(f"OData query timed out after {elapsed}ms", elapsed) from exc
        except CircuitOpenError as exc:
            logger.error("ODataExecutor: circuit open, %s query not sent: %s", mode, query)
            raise DataServiceUnavailableError(str(exc)) from exc
        except httpx.TransportError as exc:
            logger.error("ODataExecutor: transport error executing %s query %s: %s", mode, query, exc)
            raise DataServiceUnavailableError(str(exc) or type(exc).__name__) from exc
        except TransientStatusError as exc:
            logger.error("ODataExecutor: %s query failed with status %d: %s", mode, exc.status_code, query)
            raise QueryExecutionError(str(exc)) from exc
        except httpx.HTTPError as exc:
            logger.error("ODataExecutor: HTTP error executing %s query %s: %s", mode, query, exc)
            raise QueryExecutionError(str(exc) or type(exc).__name__) from exc
        except Exception as exc:
            # e.g. httpx.InvalidURL for control characters in the generated query
            logger.error("ODataExecutor: %s query could not be sent: %s: %s", mode, query, exc)
            raise QueryExecutionError(str(exc) or type(exc).__name__) from exc
        finally:
            self._metrics.observe("odata_query_duration_ms", _elapsed_ms(start))


def _raise_for_status(status_code: int) -> None:
    if status_code >= 400:
        raise QueryExecutionError(f"Response status code does not indicate success: {status_code}")


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)
