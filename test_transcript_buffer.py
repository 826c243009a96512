#!/usr/bin/env python3
"""Tests for turn tracking and the transcript log.

Run: python3 test_transcript_buffer.py
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from session_events import Speaker
from transcript_buffer import TranscriptLog, TranscriptTurn, TurnTracker

PASSED = 0
FAILED = 0
ERRORS = []


def named(name):
    """Decorator to register a test."""
    def decorator(fn):
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


# ══════════════════════════════════════════════════════════════════
# Test Group 1: Sealing
# ══════════════════════════════════════════════════════════════════

@named("Fragments concatenate in arrival order and seal on turn complete")
def test_fragments_seal():
    tracker = TurnTracker()
    for frag in ["I th", "ink we", " should"]:
        tracker.add_partial(Speaker.USER, frag)
    assert tracker.pending(Speaker.USER) == "I think we should"

    sealed = tracker.on_turn_complete()
    assert sealed == [TranscriptTurn(Speaker.USER, "I think we should")], sealed
    assert tracker.transcript() == "user: I think we should"
    assert tracker.pending(Speaker.USER) == ""


@named("User turn is sealed before the agent turn")
def test_seal_order():
    tracker = TurnTracker()
    tracker.add_partial(Speaker.AGENT, "Hello, who is this?")
    tracker.add_partial(Speaker.USER, "Hi, it's Sam")
    tracker.on_turn_complete()
    assert tracker.transcript() == "user: Hi, it's Sam\nmodel: Hello, who is this?"


@named("Turn complete with nothing pending seals nothing")
def test_empty_turn():
    tracker = TurnTracker()
    assert tracker.on_turn_complete() == []
    assert len(tracker.log) == 0
    tracker.add_partial(Speaker.USER, "")
    assert tracker.on_turn_complete() == []


@named("Consecutive turns from the same speaker stay separate entries")
def test_separate_turns():
    tracker = TurnTracker()
    tracker.add_partial(Speaker.AGENT, "First.")
    tracker.on_turn_complete()
    tracker.add_partial(Speaker.AGENT, "Second.")
    tracker.on_turn_complete()
    assert [t.text for t in tracker.log] == ["First.", "Second."]


# ══════════════════════════════════════════════════════════════════
# Test Group 2: Interruption and flush
# ══════════════════════════════════════════════════════════════════

@named("Interrupted drops the agent partial, keeps the user's")
def test_interrupted_clears_agent():
    tracker = TurnTracker()
    tracker.add_partial(Speaker.USER, "Wait, ")
    tracker.add_partial(Speaker.AGENT, "Our pricing starts at")
    tracker.on_interrupted()
    assert tracker.pending(Speaker.AGENT) == ""
    assert tracker.pending(Speaker.USER) == "Wait, "


@named("Interrupted does not alter already sealed turns")
def test_interrupted_keeps_log():
    tracker = TurnTracker()
    tracker.add_partial(Speaker.USER, "I think we should")
    tracker.on_turn_complete()
    before = tracker.log.turns
    tracker.on_interrupted()
    tracker.on_interrupted()
    assert tracker.log.turns == before


@named("flush seals open partials at session end")
def test_flush():
    tracker = TurnTracker()
    tracker.add_partial(Speaker.USER, "One more thing")
    sealed = tracker.flush()
    assert [t.text for t in sealed] == ["One more thing"]
    assert tracker.flush() == []


# ══════════════════════════════════════════════════════════════════
# Test Group 3: Log serialization
# ══════════════════════════════════════════════════════════════════

@named("Stored messages use 'model' for the agent")
def test_to_messages():
    log = TranscriptLog()
    log.append(TranscriptTurn(Speaker.USER, "Hi"))
    log.append(TranscriptTurn(Speaker.AGENT, "Hello"))
    assert log.to_messages() == [
        {"role": "user", "content": "Hi"},
        {"role": "model", "content": "Hello"},
    ]


@named("Transcript lines use the same role names as stored messages")
def test_format_matches_stored_roles():
    log = TranscriptLog()
    log.append(TranscriptTurn(Speaker.USER, "Hi"))
    log.append(TranscriptTurn(Speaker.AGENT, "Hello"))
    assert log.format() == "user: Hi\nmodel: Hello"
    roles = [line.split(":")[0] for line in log.format().splitlines()]
    assert roles == [m["role"] for m in log.to_messages()]


@named("Tracker can write into a shared log")
def test_shared_log():
    log = TranscriptLog()
    tracker = TurnTracker(log)
    tracker.add_partial(Speaker.USER, "Hi")
    tracker.on_turn_complete()
    assert len(log) == 1
    assert log.format() == "user: Hi"


if __name__ == "__main__":
    print("=" * 60)
    print("Transcript Buffer Tests")
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
