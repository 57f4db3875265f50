"""Remote content fetch.

Fetches are the only concurrent stage of a conversion: every missing asset is
submitted to a thread pool at once and the batch is awaited as a whole. The
pool never touches the artifact store; results land in a
:class:`FetchedBlobTable` owned by the orchestrator.
"""

from __future__ import annotations

import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import httpx

from ..errors import ConversionError, ErrorCode, download_failed
from ..logging import get_logger
from ..reporting import get_reporter
from .paths import AssetLocation, ContentMapping

__all__ = [
    "Transport",
    "HttpxTransport",
    "Fetcher",
    "FetchOutcome",
    "FetchedBlobTable",
    "fetch_entity_mappings",
]

_USER_AGENT = "bundlegen/3.0"


class Transport(Protocol):
    def get(self, url: str) -> bytes: ...

    def post_json(self, url: str, payload: Any) -> Any: ...


class HttpxTransport:
    """HTTP transport on an ``httpx.Client`` with a linear retry backoff."""

    # Server side conditions that may clear up on a later attempt
    RETRY_STATUS = frozenset({429, 500, 502, 503, 504})

    def __init__(
        self,
        retries: int = 5,
        timeout: float = 60.0,
        backoff: float = 0.5,
        *,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.retries = max(1, retries)
        self.timeout = timeout
        self.backoff = backoff
        self.client = client or httpx.Client(
            timeout=httpx.Timeout(timeout),
            headers={"User-Agent": _USER_AGENT},
            follow_redirects=True,
        )

    def close(self) -> None:
        self.client.close()

    def _request(self, method: str, url: str, **kwargs: Any) -> bytes:
        last: str = "no attempt"
        for attempt in range(1, self.retries + 1):
            try:
                response = self.client.request(method, url, **kwargs)
            except (httpx.TimeoutException, httpx.NetworkError) as exc:
                last = repr(exc)
            else:
                if response.is_success:
                    # An empty 200 body is valid content
                    return response.content
                last = f"HTTP {response.status_code}"
                if response.status_code not in self.RETRY_STATUS:
                    break
            if attempt < self.retries and self.backoff > 0:
                time.sleep(self.backoff * attempt)
        raise download_failed(url, last, {"attempts": self.retries})

    def get(self, url: str) -> bytes:
        return self._request("GET", url)

    def post_json(self, url: str, payload: Any) -> Any:
        raw = self._request("POST", url, json=payload)
        try:
            return json.loads(raw.decode("utf-8")) if raw else None
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ConversionError(
                code=ErrorCode.UNEXPECTED_ERROR,
                message=f"Invalid JSON from {url}: {exc}",
            ) from exc


@dataclass(slots=True)
class FetchOutcome:
    location: AssetLocation
    data: Optional[bytes] = None
    error: Optional[ConversionError] = None
    started: bool = True

    @property
    def ok(self) -> bool:
        return self.error is None and self.data is not None


class FetchedBlobTable:
    """In-memory blobs keyed by location; entries are released once staged."""

    def __init__(self) -> None:
        self._blobs: Dict[AssetLocation, bytes] = {}

    def put(self, location: AssetLocation, data: bytes) -> None:
        self._blobs[location] = data

    def get(self, location: AssetLocation) -> Optional[bytes]:
        return self._blobs.get(location)

    def pop(self, location: AssetLocation) -> Optional[bytes]:
        return self._blobs.pop(location, None)

    def clear(self) -> None:
        self._blobs.clear()

    def __contains__(self, location: object) -> bool:
        return location in self._blobs

    def __len__(self) -> int:
        return len(self._blobs)


class Fetcher:
    def __init__(self, transport: Transport, concurrency: int = 0) -> None:
        self.transport = transport
        self.concurrency = concurrency
        self._lock = threading.Lock()
        self.requests = 0

    def fetch(self, url: str) -> bytes:
        with self._lock:
            self.requests += 1
        try:
            data = self.transport.get(url)
        except ConversionError:
            raise
        except Exception as exc:  # transport bugs surface as download failures
            raise download_failed(url, repr(exc)) from exc
        if data is None:
            raise download_failed(url, "no data")
        return bytes(data)

    def fetch_all(
        self,
        locations: Sequence[AssetLocation],
        base_url: str,
        blobs: FetchedBlobTable,
        cancelled: Callable[[], bool] = lambda: False,
    ) -> List[FetchOutcome]:
        """Fetch every location concurrently and wait for all of them.

        A failed fetch is recorded on its outcome and never cancels siblings.
        Fetches that have not started when ``cancelled()`` turns true are
        skipped (``started=False``).
        """
        logger = get_logger("fetch")
        rep = get_reporter()
        items = list(locations)
        if not items:
            return []
        workers = self.concurrency or len(items)

        def _one(loc: AssetLocation) -> FetchOutcome:
            if cancelled():
                return FetchOutcome(loc, started=False)
            url = f"{base_url}{loc.hash}"
            try:
                data = self.fetch(url)
            except ConversionError as exc:
                exc.context = {**(exc.context or {}), "hash": loc.hash, "file": loc.logical_path}
                return FetchOutcome(loc, error=exc)
            logger.debug("fetched %s (%d bytes)", loc, len(data))
            return FetchOutcome(loc, data=data)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fetch") as pool:
            futures = [pool.submit(_one, loc) for loc in items]
            outcomes = [f.result() for f in futures]

        for outcome in outcomes:
            if outcome.ok:
                blobs.put(outcome.location, outcome.data)  # type: ignore[arg-type]
            rep.advance("fetch", current_item=outcome.location.logical_path)
        return outcomes


def _payload_contents(payload: Any) -> Iterable[Dict[str, Any]]:
    entities = payload if isinstance(payload, list) else [payload]
    for entity in entities:
        if not isinstance(entity, dict):
            continue
        for entry in entity.get("content") or []:
            if isinstance(entry, dict) and "hash" in entry and "file" in entry:
                yield entry


def fetch_entity_mappings(
    transport: Transport,
    entities_url: str,
    *,
    ids: Optional[Sequence[str]] = None,
    pointers: Optional[Sequence[Tuple[int, int]]] = None,
) -> List[ContentMapping]:
    """Resolve the content mappings of entities by id or by pointer."""
    if ids:
        payload: Dict[str, Any] = {"ids": list(ids)}
    elif pointers:
        payload = {"pointers": [f"{x},{y}" for x, y in pointers]}
    else:
        raise ConversionError(
            code=ErrorCode.SCENE_LIST_NULL,
            message="No entity ids or pointers given",
        )
    response = transport.post_json(entities_url, payload)
    seen: set[tuple[str, str]] = set()
    mappings: List[ContentMapping] = []
    for entry in _payload_contents(response):
        m = ContentMapping.from_dict(entry)
        key = (m.hash, m.logical_path)
        if key in seen:
            continue
        seen.add(key)
        mappings.append(m)
    if not mappings:
        raise ConversionError(
            code=ErrorCode.UNEXPECTED_ERROR,
            message="Entity lookup returned no content",
            context={"url": entities_url, **payload},
        )
    get_logger("fetch").info(
        "Resolved %d content mappings from %s", len(mappings), entities_url
    )
    return mappings
