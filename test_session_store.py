#!/usr/bin/env python3
"""Tests for transcript/metrics persistence.

SupabaseStore runs against httpx.MockTransport; PersistenceWriter is
checked for its fire-and-forget contract (failures logged and counted,
never raised).

Run: python3 test_session_store.py
"""

import asyncio
import inspect
import json
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import httpx

sys.path.insert(0, str(Path(__file__).parent))

from session_scorer import PerformanceMetrics
from session_store import LocalSessionStore, PersistenceWriter, StoreError, SupabaseStore

PASSED = 0
FAILED = 0
ERRORS = []


def named(name):
    """Decorator to register a test; coroutine tests get their own event loop."""
    def decorator(fn):
        if inspect.iscoroutinefunction(fn):
            coro_fn = fn

            def runner():
                asyncio.run(coro_fn())
            runner.__name__ = coro_fn.__name__
            runner.__doc__ = coro_fn.__doc__
            fn = runner
        fn._test_name = name
        return fn
    return decorator


def run_test(fn):
    global PASSED, FAILED
    name = getattr(fn, '_test_name', fn.__name__)
    try:
        fn()
        PASSED += 1
        print(f"  PASS: {name}")
    except AssertionError as e:
        FAILED += 1
        ERRORS.append((name, str(e)))
        print(f"  FAIL: {name}: {e}")
    except Exception as e:
        FAILED += 1
        ERRORS.append((name, f"{type(e).__name__}: {e}"))
        print(f"  ERROR: {name}: {type(e).__name__}: {e}")


METRICS = PerformanceMetrics(70, 3, 45, "Good pace. Quantify the pain earlier.", ("Rapport",), ())

MESSAGES = [
    {"role": "user", "content": "Hi, this is Sam from Acme."},
    {"role": "model", "content": "Sam, I have five minutes."},
]


def supabase(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SupabaseStore("https://proj.supabase.co/", "anon-key", client=client, **kwargs)


# ══════════════════════════════════════════════════════════════════
# Test Group 1: SupabaseStore
# ══════════════════════════════════════════════════════════════════

@named("insert_messages posts session rows with auth headers")
async def test_insert_messages():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(201)

    store = supabase(handler)
    await store.insert_messages("s1", MESSAGES)
    req = requests[0]
    assert req.method == "POST"
    assert str(req.url) == "https://proj.supabase.co/rest/v1/messages"
    assert req.headers["apikey"] == "anon-key"
    assert req.headers["authorization"] == "Bearer anon-key"
    rows = json.loads(req.content)
    assert rows == [
        {"session_id": "s1", "role": "user", "content": "Hi, this is Sam from Acme."},
        {"session_id": "s1", "role": "model", "content": "Sam, I have five minutes."},
    ]


@named("User access token is used as the bearer when given")
async def test_access_token():
    seen = []
    store = supabase(lambda r: seen.append(r) or httpx.Response(201), access_token="user-jwt")
    await store.insert_session_metrics("s1", METRICS)
    assert seen[0].headers["authorization"] == "Bearer user-jwt"
    row = json.loads(seen[0].content)
    assert seen[0].url.path == "/rest/v1/session_metrics"
    assert row["conversion_probability"] == 45
    assert row["strengths"] == ["Rapport"]


@named("No rows means no request")
async def test_insert_nothing():
    seen = []
    store = supabase(lambda r: seen.append(r) or httpx.Response(201))
    await store.insert_messages("s1", [])
    assert seen == []


@named("fetch_recent_messages returns oldest-first")
async def test_fetch_recent():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=list(reversed(MESSAGES)))

    store = supabase(handler)
    rows = await store.fetch_recent_messages("s1", limit=2)
    assert rows == MESSAGES
    params = seen[0].url.params
    assert params["session_id"] == "eq.s1"
    assert params["order"] == "created_at.desc"
    assert params["limit"] == "2"


@named("HTTP errors become StoreError")
async def test_http_error():
    store = supabase(lambda r: httpx.Response(401, json={"message": "JWT expired"}))
    try:
        await store.insert_messages("s1", MESSAGES)
    except StoreError as e:
        assert "messages" in str(e)
    else:
        raise AssertionError("expected StoreError")


# ══════════════════════════════════════════════════════════════════
# Test Group 2: LocalSessionStore
# ══════════════════════════════════════════════════════════════════

@named("Local store keeps rows per session")
async def test_local_store():
    store = LocalSessionStore()
    await store.insert_messages("s1", MESSAGES)
    await store.insert_session_metrics("s1", METRICS)
    assert await store.fetch_recent_messages("s1", 1) == [MESSAGES[1]]
    assert await store.fetch_recent_messages("other", 5) == []
    assert store.metrics["s1"][0]["engagement_score"] == 70


# ══════════════════════════════════════════════════════════════════
# Test Group 3: PersistenceWriter
# ══════════════════════════════════════════════════════════════════

@named("Writes run in the background and land in the store")
async def test_writer_saves():
    store = LocalSessionStore()
    writer = PersistenceWriter(store)
    t1 = writer.save_transcript("s1", MESSAGES)
    t2 = writer.save_metrics("s1", METRICS)
    assert isinstance(t1, asyncio.Task) and isinstance(t2, asyncio.Task)
    await writer.drain()
    assert len(store.messages["s1"]) == 2
    assert len(store.metrics["s1"]) == 1
    assert writer.failures == 0


@named("Failed writes are counted, not raised")
async def test_writer_failure():
    store = MagicMock()
    store.insert_messages = AsyncMock(side_effect=StoreError("offline"))
    writer = PersistenceWriter(store)
    writer.save_transcript("s1", MESSAGES)
    await writer.drain()
    await asyncio.sleep(0)
    assert writer.failures == 1


@named("Without a session id nothing is written")
async def test_writer_no_session():
    store = MagicMock()
    store.insert_messages = AsyncMock()
    writer = PersistenceWriter(store)
    assert writer.save_transcript(None, MESSAGES) is None
    assert writer.save_metrics("", METRICS) is None
    store.insert_messages.assert_not_called()


@named("History fetch failure yields an empty list")
async def test_writer_history_failure():
    store = MagicMock()
    store.fetch_recent_messages = AsyncMock(side_effect=StoreError("offline"))
    writer = PersistenceWriter(store)
    assert await writer.recent_messages("s1", 10) == []
    assert await writer.recent_messages(None, 10) == []


if __name__ == "__main__":
    print("=" * 60)
    print("Session Store Tests")
    print("=" * 60)

    tests = [
        obj for name, obj in sorted(globals().items())
        if callable(obj) and hasattr(obj, '_test_name')
    ]

    print(f"\nRunning {len(tests)} tests...\n")

    for fn in tests:
        run_test(fn)

    print(f"\n{'=' * 60}")
    print(f"Results: {PASSED} passed, {FAILED} failed out of {PASSED + FAILED}")

    if ERRORS:
        print("\nFailures:")
        for name, err in ERRORS:
            print(f"  - {name}: {err}")

    print("=" * 60)
    sys.exit(0 if FAILED == 0 else 1)
