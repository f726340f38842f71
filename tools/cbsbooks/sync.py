"""
Synchronization layer between the ledger and the remote JSON store.

Reads are cache-first: ``list()`` hands back the cached collection right
away and refreshes it in the background; ``list(force_refresh=True)`` always
waits on the remote. Writes always go to the remote and never touch the
cache on failure.

A refresh that was started before a write completed is stale by definition
and is dropped when it lands, so an old background list can never undo a
newer change. The same applies to a refresh that lands after a newer one.

Everything hangs off a SyncContext created per session; there is no module
level state.

Usage:
    ctx = SyncContext.from_config(get_config())
    invoices = SyncedCollection(ctx, "invoices", Invoice.from_dict)
    current = await invoices.list()          # cached, revalidates
    fresh = await invoices.list(True)        # always hits the remote
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Generic, TypeVar

import httpx

from tools.cbsbooks.errors import BooksError, SyncError

logger = logging.getLogger("cbs.sync")

T = TypeVar("T")

DEFAULT_TTL_SECONDS = 7 * 24 * 60 * 60
DEFAULT_BATCH_SIZE = 5
RESOURCES = ("invoices", "clients", "expenses")


# ---------------------------------------------------------------------------
# Remote store
# ---------------------------------------------------------------------------

class RemoteStore:
    """Thin async client for the remote list/add/update/delete API.

        GET    {base}/{resource}        → list
        POST   {base}/{resource}        → created entity
        PUT    {base}/{resource}/{id}   → updated entity
        DELETE {base}/{resource}/{id}

    Args:
        base_url: API root, e.g. http://host/api/cbsbooks
        timeout:  Per-request timeout in seconds.
        client:   Pre-built httpx.AsyncClient (tests pass one with a
                  MockTransport). When omitted one is created and owned.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers={"Content-Type": "application/json", **(headers or {})},
        )

    async def list(self, resource: str) -> list[dict]:
        data = await self._request("GET", resource)
        if data is None:
            return []
        if not isinstance(data, list):
            raise SyncError(f"GET {resource}: expected a JSON list", retryable=False)
        return data

    async def create(self, resource: str, payload: dict) -> dict | None:
        return await self._request("POST", resource, payload)

    async def update(self, resource: str, entity_id: str, payload: dict) -> dict | None:
        return await self._request("PUT", f"{resource}/{entity_id}", payload)

    async def delete(self, resource: str, entity_id: str):
        await self._request("DELETE", f"{resource}/{entity_id}")

    async def _request(self, method: str, path: str, payload: Any = None) -> Any:
        url = f"{self.base_url}/{path}"
        try:
            resp = await self._client.request(method, url, json=payload)
        except httpx.TimeoutException as e:
            raise SyncError(f"{method} {path} timed out") from e
        except httpx.HTTPError as e:
            raise SyncError(f"{method} {path} failed: {type(e).__name__}: {e}") from e

        if not resp.is_success:
            message = _error_message(resp) or f"HTTP {resp.status_code}"
            raise SyncError(
                f"{method} {path}: {message}",
                status_code=resp.status_code,
                retryable=resp.status_code >= 500 or resp.status_code == 429,
            )

        if resp.status_code == 204 or not resp.content:
            return None

        content_type = resp.headers.get("content-type", "")
        if "text/html" in content_type or resp.text.lstrip().startswith("<"):
            # A static host answers unknown API paths with its HTML index
            raise SyncError(
                f"{method} {path}: endpoint returned HTML, the API is not deployed",
                status_code=resp.status_code,
                retryable=False,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise SyncError(f"{method} {path}: invalid JSON response",
                            status_code=resp.status_code, retryable=False) from e

    async def close(self):
        if self._owns_client:
            await self._client.aclose()


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200].strip()
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or "")
    return ""


# ---------------------------------------------------------------------------
# On-disk cache
# ---------------------------------------------------------------------------

class LocalCache:
    """JSON file per collection under ``cache_dir``, valid for ``ttl_seconds``.

    Only consulted when the in-memory collection is empty, i.e. at the start
    of a session, so the app can show yesterday's ledger before the remote
    answers.
    """

    def __init__(
        self,
        cache_dir: str | Path = "data/cache",
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _path(self, key: str) -> Path:
        return self.cache_dir / f"cbs_{key}.json"

    def load(self, key: str) -> list[dict] | None:
        """Cached records for ``key``, or None if missing, expired or corrupt."""
        path = self._path(key)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable cache %s: %s", path, e)
            return None
        if not isinstance(payload, dict) or not isinstance(payload.get("records"), list):
            logger.warning("Ignoring malformed cache %s", path)
            return None
        age = self._clock() - float(payload.get("saved_at", 0))
        if age > self.ttl_seconds:
            logger.info("Cache for %s expired (%.0f h old)", key, age / 3600)
            return None
        return payload["records"]

    def store(self, key: str, records: list[dict]):
        path = self._path(key)
        try:
            path.write_text(
                json.dumps({"saved_at": self._clock(), "records": records}, default=str),
                encoding="utf-8",
            )
        except OSError as e:
            logger.warning("Failed to write cache %s: %s", path, e)

    def clear(self, key: str | None = None) -> int:
        """Remove one cache file, or all of them. Returns files removed."""
        paths = [self._path(key)] if key else list(self.cache_dir.glob("cbs_*.json"))
        removed = 0
        for path in paths:
            if path.exists():
                path.unlink()
                removed += 1
        return removed


# ---------------------------------------------------------------------------
# Session context
# ---------------------------------------------------------------------------

@dataclass
class SyncContext:
    """Per-session sync state: where to read/write and what has loaded."""
    remote: RemoteStore
    cache: LocalCache | None = None
    loaded: set[str] = field(default_factory=set)

    @staticmethod
    def from_config(config, client: httpx.AsyncClient | None = None) -> "SyncContext":
        remote = RemoteStore(config.remote.base_url, timeout=config.remote.timeout, client=client)
        cache = None
        if config.cache.enabled:
            cache = LocalCache(config.cache.dir, ttl_seconds=config.cache.ttl_seconds)
        return SyncContext(remote=remote, cache=cache)

    def mark_loaded(self, resource: str):
        self.loaded.add(resource)

    def has_loaded(self, resource: str) -> bool:
        return resource in self.loaded

    async def close(self):
        await self.remote.close()


# ---------------------------------------------------------------------------
# Synced collection
# ---------------------------------------------------------------------------

class BulkWriteError(SyncError):
    """Some writes in a bulk add failed. The successful ones are in ``saved``."""

    def __init__(self, message: str, saved: list, failures: list[tuple[Any, SyncError]]):
        self.saved = saved
        self.failures = failures
        super().__init__(message, retryable=any(err.retryable for _, err in failures))


class SyncedCollection(Generic[T]):
    """Cache-first view of one remote collection.

    Entities must expose ``id`` and ``to_dict()``; ``decode`` turns a wire
    record back into an entity.

    Args:
        context:   Session SyncContext.
        resource:  Remote collection name ("invoices", "clients", "expenses").
        decode:    Wire dict → entity.
    """

    def __init__(
        self,
        context: SyncContext,
        resource: str,
        decode: Callable[[dict], T],
    ):
        self._ctx = context
        self.resource = resource
        self._decode = decode

        self._items: tuple[T, ...] | None = None
        self._write_marker = 0
        self._fetch_counter = 0
        self._landed_fetch = 0
        self._tasks: set[asyncio.Task] = set()
        self.last_error: SyncError | None = None

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    @property
    def has_cache(self) -> bool:
        return self._items is not None

    @property
    def write_marker(self) -> int:
        return self._write_marker

    @property
    def pending_refreshes(self) -> int:
        return len(self._tasks)

    def snapshot(self) -> list[T]:
        """Copy of the cached collection (empty before the first load)."""
        return list(self._items or ())

    def get(self, entity_id: str) -> T | None:
        for item in self._items or ():
            if item.id == entity_id:
                return item
        return None

    async def list(self, force_refresh: bool = False) -> list[T]:
        """Return the collection.

        Without ``force_refresh`` a cached copy comes back immediately and a
        background refresh is scheduled; with no cache at all this waits on
        the remote. ``force_refresh`` always waits on the remote.
        """
        if not force_refresh:
            if self._items is None:
                self._restore_from_disk()
            if self._items is not None:
                snapshot = list(self._items)
                self._schedule_refresh()
                return snapshot
        return await self._fetch()

    def _restore_from_disk(self):
        cache = self._ctx.cache
        if cache is None:
            return
        records = cache.load(self.resource)
        if records is None:
            return
        try:
            self._items = tuple(self._decode(r) for r in records)
        except BooksError as e:
            logger.warning("Discarding cached %s: %s", self.resource, e)
            return
        logger.info("Restored %d %s from local cache", len(self._items), self.resource)

    def _schedule_refresh(self):
        task = asyncio.create_task(self._background_refresh())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _background_refresh(self):
        try:
            await self._fetch()
        except SyncError as e:
            # Nobody is awaiting this; keep the cached copy and record why
            self.last_error = e
            logger.warning("Background refresh of %s failed: %s", self.resource, e)

    async def _fetch(self) -> list[T]:
        self._fetch_counter += 1
        fetch_id = self._fetch_counter
        marker = self._write_marker

        records = await self._ctx.remote.list(self.resource)
        try:
            items = tuple(self._decode(r) for r in records)
        except BooksError as e:
            raise SyncError(f"GET {self.resource}: bad record: {e}", retryable=False) from e

        if marker != self._write_marker:
            logger.debug("Dropping %s fetch #%d: a write completed while it was in flight",
                         self.resource, fetch_id)
            return list(items)
        if fetch_id < self._landed_fetch:
            logger.debug("Dropping %s fetch #%d: fetch #%d already landed",
                         self.resource, fetch_id, self._landed_fetch)
            return list(items)

        self._install(items, fetch_id)
        return list(items)

    def _install(self, items: tuple[T, ...], fetch_id: int):
        self._items = items
        self._landed_fetch = fetch_id
        self.last_error = None
        self._ctx.mark_loaded(self.resource)
        self._persist()
        logger.debug("%s cache replaced (%d records)", self.resource, len(items))

    def _persist(self):
        if self._ctx.cache is not None and self._items is not None:
            self._ctx.cache.store(self.resource, [item.to_dict() for item in self._items])

    # -------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------

    async def add(self, entity: T) -> T:
        """Create ``entity`` remotely. The cache is not updated."""
        result = await self._ctx.remote.create(self.resource, entity.to_dict())
        self._write_marker += 1
        return self._decode_result(result, entity)

    async def update(self, entity: T) -> T:
        """Replace ``entity`` remotely. The cache is not updated."""
        result = await self._ctx.remote.update(self.resource, entity.id, entity.to_dict())
        self._write_marker += 1
        return self._decode_result(result, entity)

    async def delete(self, entity_id: str):
        """Delete remotely. The cache is not updated."""
        await self._ctx.remote.delete(self.resource, entity_id)
        self._write_marker += 1

    def _decode_result(self, result: Any, fallback: T) -> T:
        if not isinstance(result, dict):
            return fallback
        try:
            return self._decode(result)
        except BooksError as e:
            logger.warning("Remote echoed an unreadable %s record, keeping the local one: %s",
                           self.resource, e)
            return fallback

    async def bulk_add(self, entities: list[T], batch_size: int = DEFAULT_BATCH_SIZE) -> list[T]:
        """Add many entities, ``batch_size`` requests at a time.

        Raises:
            BulkWriteError: if any add failed. Successful adds are kept.
        """
        saved: list[T] = []
        failures: list[tuple[T, SyncError]] = []
        for start in range(0, len(entities), batch_size):
            batch = entities[start:start + batch_size]
            outcomes = await asyncio.gather(*(self.add(e) for e in batch), return_exceptions=True)
            for entity, outcome in zip(batch, outcomes):
                if isinstance(outcome, SyncError):
                    failures.append((entity, outcome))
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    saved.append(outcome)

        logger.info("Bulk add %s: %d saved, %d failed", self.resource, len(saved), len(failures))
        if failures:
            raise BulkWriteError(
                f"{len(failures)} of {len(entities)} {self.resource} failed to save: {failures[0][1]}",
                saved=saved,
                failures=failures,
            )
        return saved

    async def bulk_delete(self, entity_ids: list[str], batch_size: int = DEFAULT_BATCH_SIZE) -> list[str]:
        """Delete many ids. Returns ids deleted; raises BulkWriteError on partial failure."""
        deleted: list[str] = []
        failures: list[tuple[str, SyncError]] = []
        for start in range(0, len(entity_ids), batch_size):
            batch = entity_ids[start:start + batch_size]
            outcomes = await asyncio.gather(*(self.delete(i) for i in batch), return_exceptions=True)
            for entity_id, outcome in zip(batch, outcomes):
                if isinstance(outcome, SyncError):
                    failures.append((entity_id, outcome))
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    deleted.append(entity_id)
        if failures:
            raise BulkWriteError(
                f"{len(failures)} of {len(entity_ids)} {self.resource} failed to delete: {failures[0][1]}",
                saved=deleted,
                failures=failures,
            )
        return deleted

    # -------------------------------------------------------------------
    # Direct cache edits (after a successful write)
    # -------------------------------------------------------------------

    def apply_local(self, entity: T):
        """Insert or replace ``entity`` in the cache. New entities go first."""
        if self._items is None:
            self._items = (entity,)
        elif any(item.id == entity.id for item in self._items):
            self._items = tuple(entity if item.id == entity.id else item for item in self._items)
        else:
            self._items = (entity, *self._items)
        self._persist()

    def discard_local(self, entity_id: str):
        if self._items is None:
            return
        self._items = tuple(item for item in self._items if item.id != entity_id)
        self._persist()

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    async def wait_idle(self):
        """Wait for every scheduled background refresh to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self):
        """Cancel background refreshes still in flight."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
