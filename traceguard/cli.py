"""Command-line entry point for one-off alert evaluations and investigations.

Usage:
    python -m traceguard.cli evaluate ALERT_ID
    python -m traceguard.cli investigate ALERT_ID [--lookback-days N]

Results are printed to stdout as JSON.
"""

import argparse
import asyncio
import logging
import sys
from datetime import UTC, datetime, timedelta

from traceguard.alerting.evaluator import read_metric
from traceguard.alerting.loop import AlertLoopDeps, CycleStatus, run_evaluation_cycle, run_investigation
from traceguard.alerting.models import Alert
from traceguard.storage.store import get_alert, get_initialized_connection

logging.basicConfig(
    level=logging.WARNING,
    format="%(levelname)s: %(message)s",
)


async def _evaluate(deps: AlertLoopDeps, alert_id: str) -> int:
    outcome = await run_evaluation_cycle(alert_id, deps)
    print(outcome.model_dump_json(indent=2))
    return 1 if outcome.status is CycleStatus.NOT_FOUND else 0


async def _investigate(deps: AlertLoopDeps, alert_id: str, lookback_days: int | None) -> int:
    record = get_alert(deps.conn, alert_id)
    if record is None:
        print(f"Alert not found: {alert_id}", file=sys.stderr)
        return 1

    alert = Alert.from_record(record)
    window_end = datetime.now(UTC)
    metric = await read_metric(alert, deps.metric_source, window_end)
    result = await run_investigation(
        alert,
        deps,
        window_start=window_end - timedelta(minutes=alert.window_mins),
        window_end=window_end,
        alert_value=metric.value,
        trigger="manual",
        lookback_days=lookback_days,
    )
    print(result.model_dump_json(indent=2))
    return 0


def main(argv: list[str] | None = None) -> None:
    """Parse args and run the requested command."""
    parser = argparse.ArgumentParser(description="TraceGuard alert evaluation and root-cause investigation")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at INFO level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    evaluate_parser = subparsers.add_parser("evaluate", help="Run one evaluation cycle for an alert")
    evaluate_parser.add_argument("alert_id", type=str)

    investigate_parser = subparsers.add_parser("investigate", help="Run a root-cause investigation for an alert")
    investigate_parser.add_argument("alert_id", type=str)
    investigate_parser.add_argument(
        "--lookback-days",
        type=int,
        default=None,
        help="Days of commits and pull requests to correlate (default: DEFAULT_LOOKBACK_DAYS)",
    )
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.INFO)

    try:
        conn = get_initialized_connection()
    except Exception as e:
        print(f"Failed to open database: {e}", file=sys.stderr)
        sys.exit(1)

    deps = AlertLoopDeps.from_connection(conn)
    try:
        if args.command == "evaluate":
            code = asyncio.run(_evaluate(deps, args.alert_id))
        else:
            code = asyncio.run(_investigate(deps, args.alert_id, args.lookback_days))
    except Exception as e:
        print(f"Command failed: {e}", file=sys.stderr)
        code = 1
    finally:
        conn.close()
    sys.exit(code)


if __name__ == "__main__":
    main()
