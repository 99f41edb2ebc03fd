from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from botforge.core.config import get_settings
from botforge.core.logging import configure_logging
from botforge.services.reconciliation import UsageReconciler


logger = logging.getLogger("botforge.scripts.reconcile_usage")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Recompute subscription usage counters from resource tables")
    parser.add_argument("--subscription-id", default=None, help="Reconcile a single subscription")
    parser.add_argument("--loop", action="store_true", help="Run the sweep repeatedly")
    parser.add_argument(
        "--interval-s",
        type=int,
        default=None,
        help="Seconds between sweeps in --loop mode (default: LEDGER_RECONCILE_INTERVAL_S)",
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    reconciler = UsageReconciler()
    if args.subscription_id:
        report = await reconciler.reconcile_subscription(args.subscription_id)
        for drift in report.drifts:
            print(f"{drift.counter}: recorded={drift.recorded} actual={drift.actual}")
        for counter in report.deferred:
            print(f"{counter}: deferred, operation in flight")
        print("in sync" if not report.healed else "healed")
        return 0

    interval_s = args.interval_s or get_settings().ledger_reconcile_interval_s
    while True:
        reports = await reconciler.reconcile_all_active()
        healed = sum(1 for report in reports if report.healed)
        print(f"reconciled={len(reports)} healed={healed}")
        if not args.loop:
            return 0
        logger.info("reconcile_sleep interval_s=%s", interval_s)
        await asyncio.sleep(max(interval_s, 1))


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 0
    except Exception as exc:  # noqa: BLE001 - surface sweep failures clearly
        print(f"reconcile_usage failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
