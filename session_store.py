"""Persistence collaborator: transcript messages and session metrics.

Two interchangeable stores with the same async interface:
- SupabaseStore: PostgREST tables `messages` and `session_metrics`
- LocalSessionStore: in-memory rows (no credentials configured, tests)

From the session's point of view every write is fire-and-forget: failures
are logged by PersistenceWriter and never reach the user or block a state
transition.
"""

import asyncio
import logging

import httpx

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """A persistence call failed."""


class SupabaseStore:
    """Minimal PostgREST client for the coaching tables."""

    def __init__(self, url: str, anon_key: str, access_token: str | None = None,
                 timeout: float = 15.0, client: httpx.AsyncClient | None = None):
        self.base_url = f"{url.rstrip('/')}/rest/v1"
        self._headers = {
            "apikey": anon_key,
            "Authorization": f"Bearer {access_token or anon_key}",
            "Content-Type": "application/json",
        }
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def _request(self, method, table, **kwargs):
        try:
            resp = await self._client.request(
                method, f"{self.base_url}/{table}", headers=self._headers, **kwargs
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise StoreError(f"{method} {table} failed: {e}") from e
        return resp

    async def insert_messages(self, session_id: str, messages: list[dict]):
        rows = [{"session_id": session_id, "role": m["role"], "content": m["content"]}
                for m in messages]
        if not rows:
            return
        await self._request("POST", "messages", json=rows)

    async def insert_session_metrics(self, session_id: str, metrics):
        await self._request("POST", "session_metrics", json=metrics.to_row(session_id))

    async def fetch_recent_messages(self, session_id: str, limit: int = 10) -> list[dict]:
        resp = await self._request("GET", "messages", params={
            "session_id": f"eq.{session_id}",
            "select": "role,content",
            "order": "created_at.desc",
            "limit": str(limit),
        })
        try:
            rows = resp.json()
        except ValueError as e:
            raise StoreError(f"messages response is not JSON: {e}") from e
        return list(reversed(rows))

    async def aclose(self):
        await self._client.aclose()


class LocalSessionStore:
    """In-memory store with the same interface as SupabaseStore."""

    def __init__(self):
        self.messages: dict[str, list[dict]] = {}
        self.metrics: dict[str, list[dict]] = {}

    async def insert_messages(self, session_id: str, messages: list[dict]):
        rows = self.messages.setdefault(session_id, [])
        rows.extend({"role": m["role"], "content": m["content"]} for m in messages)

    async def insert_session_metrics(self, session_id: str, metrics):
        self.metrics.setdefault(session_id, []).append(metrics.to_row(session_id))

    async def fetch_recent_messages(self, session_id: str, limit: int = 10) -> list[dict]:
        rows = self.messages.get(session_id, [])
        return [dict(r) for r in rows[-limit:]] if limit else []

    async def aclose(self):
        pass


class PersistenceWriter:
    """Runs store writes as background tasks; failures are logged, never raised."""

    def __init__(self, store):
        self.store = store
        self._tasks: set[asyncio.Task] = set()
        self.failures = 0

    def _spawn(self, coro, label: str) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)

        def _done(t):
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                self.failures += 1
                logger.error("Persistence: %s failed: %s", label, exc)
            else:
                logger.debug("Persistence: %s saved", label)

        task.add_done_callback(_done)
        return task

    def save_transcript(self, session_id: str, messages: list[dict]):
        if not session_id or not messages:
            return None
        return self._spawn(self.store.insert_messages(session_id, messages), "transcript")

    def save_metrics(self, session_id: str, metrics):
        if not session_id:
            return None
        return self._spawn(self.store.insert_session_metrics(session_id, metrics), "metrics")

    async def recent_messages(self, session_id: str, limit: int) -> list[dict]:
        """Seed history; any failure yields an empty list."""
        if not session_id or limit <= 0:
            return []
        try:
            return await self.store.fetch_recent_messages(session_id, limit)
        except Exception as e:
            logger.error("Persistence: history fetch failed: %s", e)
            return []

    async def drain(self, timeout: float = 5.0):
        """Wait briefly for pending writes (used on shutdown)."""
        if not self._tasks:
            return
        await asyncio.wait(list(self._tasks), timeout=timeout)
