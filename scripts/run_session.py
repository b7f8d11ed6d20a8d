"""
Face ID Session CLI

Runs Face ID enrollment or verification from a terminal with the local
camera, and exposes the maintenance operations.

Usage:
    # Enroll your face (3 capture rounds)
    python scripts/run_session.py enroll

    # Verify against the enrolled face
    python scripts/run_session.py verify

    # Show enrollment / lockout status
    python scripts/run_session.py status

    # Remove the enrolled face and attempt history
    python scripts/run_session.py reset

    # Write N failed attempts (1 minute apart) to exercise the lockout
    python scripts/run_session.py status --simulate-failures 5

Exit codes: 0 on success, 1 on any other outcome.
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from faceid.config import setup_logging
from faceid.gate import FaceIdGate, build_gate
from faceid.session import SessionEvent, SessionMode, SessionState


def print_banner(text: str, char: str = "="):
    line = char * 60
    print(f"\n{line}")
    print(text)
    print(line)


def print_event(event: SessionEvent):
    """Render one session event on a single, rewritten terminal line."""
    if event.state is SessionState.CAPTURING:
        bar = "#" * (event.progress // 5)
        print(
            f"\r  Round {event.round}/{event.total_rounds} [{bar:<20}] {event.progress:3d}%",
            end="",
            flush=True,
        )
    elif event.state is SessionState.ANALYZING:
        print("\n  Analyzing...")
    elif event.state is SessionState.REQUESTING_RESOURCE:
        print("  Opening camera...")


def print_status(gate: FaceIdGate):
    status = gate.status()

    print_banner("Face ID Status")
    print(f"  Enrolled:           {status['enrolled']}")
    print(f"  Has descriptor:     {status['has_descriptor']}")
    print(f"  Enrolled at:        {status['enrolled_at'] or '-'}")
    print(f"  Locked out:         {status['locked_out']}")
    if status["locked_out"]:
        print(f"  Lockout remaining:  {status['lockout_minutes_remaining']} min")
    print(f"  Recent failures:    {status['recent_failures']}/{status['max_failures']}")
    print(f"  Total attempts:     {status['total_attempts']}")
    print(f"  Camera present:     {status['camera_present']}")


async def run_session(gate: FaceIdGate, mode: SessionMode) -> int:
    gate.add_listener(print_event)

    if mode is SessionMode.ENROLLMENT:
        print("Look at the camera and hold still.")

    try:
        outcome = await gate.run(mode)
    finally:
        gate.remove_listener(print_event)

    print_banner(f"Result: {outcome.state.value}")
    if outcome.reason:
        print(f"  {outcome.reason}")
    if outcome.match is not None:
        print(f"  Match score: {outcome.match.score:.2f} ({outcome.match.details.get('votes')} votes)")
    if outcome.state is SessionState.LOCKED:
        print(f"  Try again in {outcome.lockout_minutes} minutes.")
    elif not outcome.succeeded and outcome.retry_allowed:
        print("  You can retry.")

    return 0 if outcome.succeeded else 1


def main():
    parser = argparse.ArgumentParser(
        description="Face ID gate - enrollment, verification and maintenance",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "command", choices=["enroll", "verify", "status", "reset"],
        help="Operation to run",
    )
    parser.add_argument(
        "--simulate-failures", type=int, default=None, metavar="N",
        help="Replace the attempt history with N failures one minute apart",
    )
    parser.add_argument(
        "--log-level", type=str, default=None,
        help="Override the configured log level (e.g. DEBUG)",
    )
    args = parser.parse_args()

    setup_logging(args.log_level)
    gate = build_gate(source="cli")

    try:
        if args.simulate_failures is not None:
            gate.ledger.seed_failures(args.simulate_failures)
            print(f"Simulated {args.simulate_failures} failed attempts.")

        if args.command == "status":
            print_status(gate)
            return 0

        if args.command == "reset":
            gate.clear_all()
            print("Face ID data cleared. You can enroll again.")
            return 0

        mode = SessionMode.ENROLLMENT if args.command == "enroll" else SessionMode.VERIFICATION
        try:
            return asyncio.run(run_session(gate, mode))
        except KeyboardInterrupt:
            print("\nCancelled.")
            return 1

    finally:
        gate.close()


if __name__ == "__main__":
    sys.exit(main())
