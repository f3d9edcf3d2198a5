"""CLI for reconciliation ticks without a Celery worker.

Usage:
    python scripts/reconcile.py --user USER_ID          # One tick for one user
    python scripts/reconcile.py --loop                  # Tick every automated user on the refresh interval
"""

import argparse
import asyncio
import json
import logging
import signal

logger = logging.getLogger(__name__)

# Graceful shutdown flag
_shutdown = asyncio.Event()


def _handle_signal(sig: int, frame: object) -> None:
    """Handle SIGINT/SIGTERM for graceful shutdown."""
    logger.info("Received signal %d, shutting down...", sig)
    _shutdown.set()


async def run_once(user_id: str) -> None:
    """Run a single reconciliation tick and print the result."""
    from app.services.execution.alpaca_gateway import AlpacaGateway, resolve_credentials
    from app.services.exit_guard import ExitGuard
    from app.services.ledger import TradeLedger
    from app.services.reconciliation import ReconciliationEngine
    from app.services.risk_policy import RiskPolicyStore

    gateway = AlpacaGateway(resolve_credentials(user_id))
    exit_guard = ExitGuard()
    try:
        engine = ReconciliationEngine(gateway, TradeLedger(), RiskPolicyStore(), exit_guard)
        result = await engine.reconcile(user_id)
        print(json.dumps(result.to_dict(), indent=2))
    finally:
        await exit_guard.close()
        await gateway.close()


async def run_loop() -> None:
    """Tick every automated user until interrupted."""
    from app.config import settings
    from app.tasks.trade_tasks import _reconcile_positions_async

    interval = settings.position_refresh_seconds
    print(f"Reconciling every {interval:.0f}s. Press Ctrl+C to stop.\n")

    while not _shutdown.is_set():
        try:
            summary = await _reconcile_positions_async()
            logger.info("Tick: %s users, status=%s", summary.get("users"), summary.get("status"))
        except Exception as e:
            logger.error("Tick failed: %s", e)
        try:
            await asyncio.wait_for(_shutdown.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass

    print("Reconciliation loop stopped.")


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    )
    parser = argparse.ArgumentParser(description="PaperDesk reconciliation")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--user", help="Run one tick for this user id")
    group.add_argument("--loop", action="store_true", help="Tick all automated users on an interval")
    args = parser.parse_args()

    if args.user:
        asyncio.run(run_once(args.user))
    else:
        signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)
        asyncio.run(run_loop())


if __name__ == "__main__":
    main()
