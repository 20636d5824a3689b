#!/usr/bin/env python3
"""
Self-improvement runner - run ticks once or on a schedule, and review the
pending action queue from the command line.
"""

import argparse
import json
import sys
from pathlib import Path

# Load environment variables from .env file first
import dotenv
dotenv.load_dotenv()

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from opencontext.core.config import ImproverConfig, validate_config
from opencontext.core.control_plane import ControlPlane
from opencontext.core.heartbeat import Heartbeat
from opencontext.core.improver import TickReport, approve_and_execute, self_improvement_tick
from opencontext.core.observer import Observer
from opencontext.core.schema import load_schema
from opencontext.core.store import ContextStore


def format_report(report: TickReport) -> str:
    """Format a tick report for display."""
    lines = []

    if report.completed_at:
        duration = report.completed_at - report.started_at
        lines.append(f"Tick finished in {duration.total_seconds():.2f} seconds")

    if report.errors:
        lines.append(f"Status: COMPLETED WITH ERRORS ({len(report.errors)})")
    elif report.deadline_exceeded:
        lines.append("Status: DEADLINE EXCEEDED")
    else:
        lines.append("Status: SUCCESS")

    if report.expired:
        lines.append(f"Expired pending actions: {report.expired}")
    if report.executed:
        lines.append("Applied:")
        for item in report.executed:
            lines.append(f"  - {item['type']} ({item['count']})")
    if report.enqueued:
        lines.append(f"Queued for approval: {', '.join(report.enqueued)}")
    if report.skipped:
        lines.append("Skipped:")
        for item in report.skipped:
            lines.append(f"  - {item['type']}: {item['reason']}")
    if report.errors:
        lines.append("Errors:")
        for error in report.errors:
            lines.append(f"  - {error}")

    return "\n".join(lines)


def main():
    parser = argparse.ArgumentParser(
        description="Self-improvement tick runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --once                    # Run one tick and print the report
  %(prog)s --loop                    # Run ticks every OPENCONTEXT_TICK_INTERVAL_SEC
  %(prog)s --list-pending            # Show actions awaiting approval
  %(prog)s --approve pa-1a2b3c4d     # Approve and apply an action
  %(prog)s --dismiss pa-1a2b3c4d --reason "keep these"

Environment variables:
- OPENCONTEXT_HOME=~/.opencontext (store directory)
- OPENCONTEXT_AUTO_APPROVE_LOW/MEDIUM/HIGH (per-tier auto-execute)
- OPENCONTEXT_TICK_TIMEOUT=30000 (ms)
- OPENCONTEXT_PENDING_TTL=604800000 (ms)
        """
    )

    parser.add_argument("--once", action="store_true", help="Run a single tick")
    parser.add_argument("--loop", action="store_true", help="Run ticks on the heartbeat schedule")
    parser.add_argument("--list-pending", action="store_true", help="List pending actions")
    parser.add_argument("--approve", metavar="ACTION_ID", help="Approve and apply a pending action")
    parser.add_argument("--dismiss", metavar="ACTION_ID", help="Dismiss a pending action")
    parser.add_argument("--reason", help="Dismissal reason (protects the affected entries)")
    parser.add_argument("--json", "-j", action="store_true", help="Output results as JSON")

    args = parser.parse_args()

    if not any([args.once, args.loop, args.list_pending, args.approve, args.dismiss]):
        parser.error("Must specify an operation")

    config = ImproverConfig.from_env()
    issues = validate_config(config)
    if issues:
        print(f"Configuration invalid: {issues}", file=sys.stderr)
        return 1

    config.ensure_directories()
    store = ContextStore(config.db_path)
    observer = Observer(config.observer_path)
    control_plane = ControlPlane(observer, config)

    def tick():
        report = self_improvement_tick(store, observer, config, load_schema(config.schema_path))
        print(json.dumps(report.to_dict(), indent=2) if args.json else format_report(report))

    try:
        if args.list_pending:
            pending = control_plane.list_pending()
            if args.json:
                print(json.dumps([a.to_dict() for a in pending], indent=2))
            elif not pending:
                print("No pending actions.")
            for action in ([] if args.json else pending):
                print(f"{action.id} [{action.risk}] {action.description}")

        if args.approve:
            outcome = approve_and_execute(control_plane, args.approve, store, load_schema(config.schema_path))
            print(outcome.result)
            if not outcome.executed:
                return 1

        if args.dismiss:
            if not control_plane.dismiss(args.dismiss, args.reason):
                print(f"Action {args.dismiss} not found or already decided.")
                return 1
            print(f"Action {args.dismiss} dismissed.")

        if args.once:
            tick()

        if args.loop:
            heartbeat = Heartbeat(enabled=config.background_enabled)
            heartbeat.register_task("self_improvement_tick", config.tick_interval_sec, tick)
            heartbeat.start()

    except KeyboardInterrupt:
        print("\nShutting down...")
        return 0

    return 0


if __name__ == "__main__":
    sys.exit(main())
