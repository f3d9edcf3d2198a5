"""Trading tasks — reconciliation ticks, account snapshots, fill checks.

Celery tasks on a schedule (plus the one-shot fill check enqueued by the
order handler). Each user's tick is independent: one failing user never
stops the others.
"""

import asyncio
import logging

from app.tasks import celery_app

logger = logging.getLogger(__name__)


def _run_async(coro):
    """Run an async coroutine from a sync Celery task."""
    from app.database import engine

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        # Pooled connections are bound to this loop
        loop.run_until_complete(engine.dispose())
        loop.close()


@celery_app.task(bind=True, max_retries=0)
def reconcile_positions(self) -> dict:
    """Run a reconciliation tick for every user with automated trading enabled."""
    return _run_async(_reconcile_positions_async())


async def _reconcile_positions_async() -> dict:
    from app.services.alerting import AlertService
    from app.services.execution.alpaca_gateway import AlpacaGateway, resolve_credentials
    from app.services.exit_guard import ExitGuard
    from app.services.ledger import TradeLedger
    from app.services.reconciliation import ReconciliationEngine
    from app.services.risk_policy import RiskPolicyStore

    policies = RiskPolicyStore()
    user_ids = await policies.list_users(automated_only=True)
    if not user_ids:
        return {"status": "idle", "users": 0}

    ledger = TradeLedger()
    exit_guard = ExitGuard()
    alerts = AlertService()
    results = []
    try:
        for user_id in user_ids:
            try:
                gateway = AlpacaGateway(resolve_credentials(user_id))
            except ValueError as e:
                logger.error("No broker account for %s: %s", user_id, e)
                results.append({"user_id": user_id, "error": str(e)})
                continue
            try:
                engine = ReconciliationEngine(
                    gateway, ledger, policies, exit_guard, listeners=[alerts.on_reconciled]
                )
                result = await engine.reconcile(user_id)
                results.append(result.to_dict())
            except Exception as e:
                logger.error("Reconciliation tick failed for %s: %s", user_id, e)
                results.append({"user_id": user_id, "error": str(e)})
                await alerts.system_error("reconciliation", f"Tick failed for {user_id}: {e}")
            finally:
                await gateway.close()
    finally:
        await exit_guard.close()

    return {"status": "completed", "users": len(user_ids), "results": results}


@celery_app.task(bind=True, max_retries=0)
def refresh_account(self) -> dict:
    """Cache account and positions snapshots for every user with a saved policy."""
    return _run_async(_refresh_account_async())


async def _refresh_account_async() -> dict:
    import redis.asyncio as aioredis

    from app.config import settings
    from app.services.execution.alpaca_gateway import AlpacaGateway, resolve_credentials
    from app.services.portfolio_snapshot import save_snapshot
    from app.services.risk_policy import RiskPolicyStore

    user_ids = await RiskPolicyStore().list_users()
    ttl = int(settings.account_refresh_seconds * 3)
    refreshed = 0
    errors = []

    r = aioredis.from_url(settings.redis_url, decode_responses=True)
    try:
        for user_id in user_ids:
            try:
                gateway = AlpacaGateway(resolve_credentials(user_id))
            except ValueError as e:
                errors.append(f"{user_id}: {e}")
                continue
            try:
                account = await gateway.get_account()
                positions = await gateway.list_positions()
                await save_snapshot(r, user_id, account, positions, ttl)
                refreshed += 1
            except Exception as e:
                logger.error("Account refresh failed for %s: %s", user_id, e)
                errors.append(f"{user_id}: {e}")
            finally:
                await gateway.close()
    finally:
        await r.aclose()

    return {"status": "ok" if not errors else "partial", "refreshed": refreshed, "errors": errors}


@celery_app.task(max_retries=0)
def confirm_fill(user_id: str, broker_order_id: str) -> str:
    """One-shot market order fill check. Never raises into the worker."""
    from app.services import metrics

    try:
        return _run_async(_confirm_fill_async(user_id, broker_order_id))
    except Exception as e:
        logger.error("Fill check for %s failed: %s", broker_order_id, e)
        metrics.FILL_CHECKS.labels(result="error").inc()
        return "error"


async def _confirm_fill_async(user_id: str, broker_order_id: str) -> str:
    from app.services.execution.alpaca_gateway import AlpacaGateway, resolve_credentials
    from app.services.execution.order_handler import confirm_fill as check_fill
    from app.services.ledger import TradeLedger

    gateway = AlpacaGateway(resolve_credentials(user_id))
    try:
        return await check_fill(gateway, TradeLedger(), broker_order_id)
    finally:
        await gateway.close()
