"""
Ledger event source.

SuiEventSource talks JSON-RPC to a Sui full node (``suix_queryEvents``).
Transport failures are retried with tenacity; when retries are exhausted,
or the node answers with a JSON-RPC error, the page fails as a SourceError.
"""

from __future__ import annotations

import itertools
import logging
from typing import Any, Mapping, Protocol

import httpx
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..core.errors import SourceError
from .models import EventPage, Position, RawEvent

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50


class EventSource(Protocol):
    async def query_events(
        self,
        event_filter: Mapping[str, Any],
        after: Position | None,
        *,
        ascending: bool = True,
        limit: int | None = None,
    ) -> EventPage: ...


def module_filter(package_id: str, module_name: str) -> dict[str, Any]:
    """Event filter selecting every event emitted by one Move module."""
    return {"MoveModule": {"package": package_id, "module": module_name}}


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429 or exc.response.status_code >= 500
    return False


# =============================================================================
# Wire parsing
# =============================================================================


def _parse_position(raw: Any) -> Position:
    if not isinstance(raw, Mapping):
        raise SourceError(f"event id must be an object, got {raw!r}")
    try:
        return Position(str(raw["txDigest"]), int(raw["eventSeq"]))
    except (KeyError, TypeError, ValueError) as e:
        raise SourceError(f"malformed event id {raw!r}: {e}") from e


def parse_event(raw: Mapping[str, Any]) -> RawEvent:
    timestamp = raw.get("timestampMs")
    try:
        timestamp_ms = int(timestamp) if timestamp is not None else None
    except (TypeError, ValueError):
        timestamp_ms = None
    return RawEvent(
        type_tag=str(raw.get("type", "")),
        position=_parse_position(raw.get("id")),
        payload=raw.get("parsedJson"),
        timestamp_ms=timestamp_ms,
    )


def parse_event_page(result: Any) -> EventPage:
    """Parse the ``result`` member of a suix_queryEvents response."""
    if not isinstance(result, Mapping):
        raise SourceError(f"unexpected suix_queryEvents result: {result!r}")
    data = result.get("data") or []
    next_cursor = result.get("nextCursor")
    return EventPage(
        events=[parse_event(item) for item in data],
        has_next_page=bool(result.get("hasNextPage", False)),
        next_cursor=_parse_position(next_cursor) if next_cursor else None,
    )


# =============================================================================
# Client
# =============================================================================


class SuiEventSource:
    """
    Async JSON-RPC client for a Sui full node.

    Usage:
        async with SuiEventSource(settings.SUI_RPC_URL) as source:
            page = await source.query_events(module_filter(pkg, mod), None)
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        timeout: float = 10.0,
        max_attempts: int = 3,
        page_size: int = DEFAULT_PAGE_SIZE,
        backoff_min: float = 0.5,
        backoff_max: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.rpc_url = rpc_url
        self.page_size = page_size
        self._max_attempts = max_attempts
        self._backoff_min = backoff_min
        self._backoff_max = backoff_max
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def __aenter__(self) -> "SuiEventSource":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, body: dict[str, Any]) -> Any:
        response = await self._client.post(self.rpc_url, json=body)
        response.raise_for_status()
        return response.json()

    async def call(self, method: str, params: list[Any]) -> Any:
        """Issue one JSON-RPC call with transport retries; return its ``result``."""
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=1, min=self._backoff_min, max=self._backoff_max),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            payload = await retrying(self._post, body)
        except (httpx.HTTPError, RetryError) as e:
            raise SourceError(f"{method} failed: {type(e).__name__}: {e}") from e
        except ValueError as e:
            raise SourceError(f"{method} returned invalid JSON: {e}") from e

        if not isinstance(payload, Mapping):
            raise SourceError(f"{method} returned a non-object response")
        if payload.get("error"):
            error = payload["error"]
            message = error.get("message", error) if isinstance(error, Mapping) else error
            raise SourceError(f"{method} returned an error: {message}")
        return payload.get("result")

    async def query_events(
        self,
        event_filter: Mapping[str, Any],
        after: Position | None,
        *,
        ascending: bool = True,
        limit: int | None = None,
    ) -> EventPage:
        params = [
            dict(event_filter),
            after.to_rpc() if after is not None else None,
            limit or self.page_size,
            not ascending,
        ]
        result = await self.call("suix_queryEvents", params)
        page = parse_event_page(result)
        logger.debug(
            f"suix_queryEvents after={after} -> {len(page.events)} events, "
            f"has_next_page={page.has_next_page}"
        )
        return page
