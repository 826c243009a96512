#!/usr/bin/env python3
"""
pitch-coach: live voice sales roleplay / coaching from the terminal.

Speak into the microphone; the AI prospect (or coach) answers through the
speakers and can be interrupted by talking over it. Press Enter to end the
session and get a scored performance report.
"""

import argparse
import asyncio
import logging
import sys

from persona import INTENSITIES, MODES, SalesSettings, load_documents
from session_config import SessionConfig, get_api_key, get_supabase_credentials
from session_scorer import format_report
from session_store import LocalSessionStore, SupabaseStore
from voice_session import SessionState, VoiceSession

log = logging.getLogger("coach")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Live voice sales coaching session")
    parser.add_argument("--mode", choices=MODES, default="roleplay", help="Training mode (default: roleplay)")
    parser.add_argument("--persona", default=SalesSettings.persona,
                        help="Prospect persona for roleplay/strategy modes")
    parser.add_argument("--intensity", choices=INTENSITIES, default="normal", help="Prospect difficulty")
    parser.add_argument("--voice", choices=("Male", "Female"), default="Female", help="AI voice")
    parser.add_argument("--session-id", default=None, help="Persist transcript/metrics under this session id")
    parser.add_argument("--document", action="append", default=[], metavar="PATH",
                        help="Company document to include as context (repeatable)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser


def make_store():
    creds = get_supabase_credentials()
    if creds is None:
        log.info("Supabase credentials not set; keeping session data in memory")
        return LocalSessionStore()
    url, key = creds
    return SupabaseStore(url, key)


async def run_session(args, config: SessionConfig) -> int:
    settings = SalesSettings(mode=args.mode, persona=args.persona, intensity=args.intensity)
    store = make_store()

    def on_status(state):
        print(f"[{settings.label}] {state}")
        if state == SessionState.ACTIVE.value:
            print("Listening... press Enter to end the session.")

    session = VoiceSession(
        settings,
        api_key=get_api_key(),
        config=config,
        voice_preference=args.voice,
        session_id=args.session_id,
        documents=load_documents(args.document),
        store=store,
        on_status=on_status,
    )

    runner = asyncio.create_task(session.run())
    loop = asyncio.get_running_loop()
    enter = loop.create_future()

    def on_stdin():
        sys.stdin.readline()
        if not enter.done():
            enter.set_result(True)

    loop.add_reader(sys.stdin, on_stdin)
    try:
        done, _ = await asyncio.wait({runner, enter}, return_when=asyncio.FIRST_COMPLETED)
        if enter in done and not runner.done():
            session.end_session()
            if session.state == SessionState.ANALYZING:
                print("Analyzing performance...")
        metrics = await runner
    finally:
        loop.remove_reader(sys.stdin)
        await store.aclose()

    if session.state == SessionState.ERROR:
        print(f"Error: {session.error}", file=sys.stderr)
        return 1
    if metrics is None:
        print("Session closed without a summary.")
    else:
        print()
        print(format_report(metrics))
    return 0


def main() -> None:
    args = build_parser().parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        config = SessionConfig.from_env()
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        code = asyncio.run(run_session(args, config))
    except KeyboardInterrupt:
        log.info("Interrupted")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
