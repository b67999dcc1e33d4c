# payman_billing/billing/run.py
"""
Process entry point.

    python -m billing.run          # webhook server + billing loop
    python -m billing.run --once   # single billing run (cron)
"""
import argparse
import asyncio
import logging
import signal
from contextlib import suppress
from dataclasses import dataclass
from typing import Optional

from aiohttp import web

from billing.config import (
    ADMIN_API_TOKEN, IS_PRODUCTION, OUTBOUND_WEBHOOK_EVENTS, OUTBOUND_WEBHOOK_SECRET, OUTBOUND_WEBHOOK_URL,
    WEBHOOK_HOST, WEBHOOK_PORT, WEBHOOK_RATE_LIMIT_BACKEND, WEBHOOK_RATE_WINDOW_SEC,
)
from billing.handlers.contract_handler import ContractService
from billing.handlers.payment_handler import WebhookProcessor, list_webhook_events
from billing.handlers.subscription_handler import SubscriptionService
from billing.handlers.webhook_dispatcher import DatabaseEndpointRegistry, WebhookDispatcher
from billing.handlers.webhook_security import InMemoryRateLimiter, RedisRateLimiter, WebhookSecurityGate
from billing.utils import billing_db
from billing.utils.billing_scheduler import billing_loop, run_once
from billing.utils.catalog import ProductCatalog
from billing.utils.errors import WebhookRejected
from billing.utils.logging_config import setup_logging
from billing.utils.zarinpal import ZarinPalClient

logger = logging.getLogger(__name__)

PROCESSOR_KEY = web.AppKey("processor", WebhookProcessor)
GATE_KEY = web.AppKey("gate", WebhookSecurityGate)
REPO_KEY = web.AppKey("repo", billing_db.BillingRepository)
ADMIN_TOKEN_KEY = web.AppKey("admin_token", str)
PRODUCTION_KEY = web.AppKey("production", bool)


@dataclass
class Services:
    repo: billing_db.BillingRepository
    gateway: ZarinPalClient
    dispatcher: WebhookDispatcher
    contracts: ContractService
    subscriptions: SubscriptionService
    processor: WebhookProcessor
    gate: WebhookSecurityGate
    rate_limiter: object


def build_services(repo: Optional[billing_db.BillingRepository] = None) -> Services:
    repo = repo or billing_db.get_repo()
    gateway = ZarinPalClient.from_env()

    registry = DatabaseEndpointRegistry(repo)
    if OUTBOUND_WEBHOOK_URL and OUTBOUND_WEBHOOK_SECRET:
        registry.register(OUTBOUND_WEBHOOK_URL, OUTBOUND_WEBHOOK_SECRET, OUTBOUND_WEBHOOK_EVENTS,
                          description="configured via OUTBOUND_WEBHOOK_URL")
    dispatcher = WebhookDispatcher(registry)

    dedup = None
    if WEBHOOK_RATE_LIMIT_BACKEND == "redis":
        # imported lazily: the module builds its client at import time
        from billing.utils import redis_repo
        rate_limiter = RedisRateLimiter(redis_repo.webhook_counter_repo)
        dedup = redis_repo.webhook_dedup_repo
    else:
        rate_limiter = InMemoryRateLimiter()

    contracts = ContractService(repo, gateway, dispatcher=dispatcher)
    subscriptions = SubscriptionService(repo, gateway, ProductCatalog.from_env(), dispatcher=dispatcher)
    processor = WebhookProcessor(repo, gateway, subscriptions, dispatcher=dispatcher, dedup=dedup)
    gate = WebhookSecurityGate(rate_limiter)
    return Services(repo, gateway, dispatcher, contracts, subscriptions, processor, gate, rate_limiter)


# ──────────────────────────────────────────────────────────────────────────────
# HTTP handlers
# ──────────────────────────────────────────────────────────────────────────────
async def zarinpal_webhook_handler(request: web.Request) -> web.Response:
    try:
        await request.app[GATE_KEY].check(request.headers, request.remote)
    except WebhookRejected as e:
        return web.json_response({"received": False, "error": e.reason}, status=e.status)

    try:
        payload = await request.json()
    except ValueError:
        return web.json_response({"received": False, "error": "invalid JSON body"}, status=400)
    if not isinstance(payload, dict):
        return web.json_response({"received": False, "error": "JSON object expected"}, status=400)

    try:
        ack = await request.app[PROCESSOR_KEY].process(payload)
    except Exception as e:
        # only reachable when the audit row could not be written; the gateway redelivers
        logger.exception("Webhook could not be recorded: %s", e)
        return web.json_response({"received": False, "error": "internal error"}, status=500)
    # not settled yet: a non-2xx makes the gateway redeliver
    return web.json_response(ack.to_dict(), status=200 if ack.processed else 503)


def _parse_processed(raw: Optional[str]) -> Optional[bool]:
    if raw is None or raw == "":
        return None
    value = raw.strip().lower()
    if value in ("1", "true", "yes"):
        return True
    if value in ("0", "false", "no"):
        return False
    raise ValueError(f"processed must be true or false, got {raw!r}")


async def webhook_events_handler(request: web.Request) -> web.Response:
    token = request.app[ADMIN_TOKEN_KEY]
    if not token and request.app[PRODUCTION_KEY]:
        logger.error("ADMIN_API_TOKEN is not set, refusing admin listing in production")
        return web.json_response({"error": "admin API disabled"}, status=503)
    if token and request.headers.get("Authorization", "") != f"Bearer {token}":
        return web.json_response({"error": "unauthorized"}, status=401)
    q = request.query
    try:
        page = list_webhook_events(
            request.app[REPO_KEY],
            source=q.get("source") or None,
            processed=_parse_processed(q.get("processed")),
            limit=int(q.get("limit", "50")),
            offset=int(q.get("offset", "0")),
        )
    except ValueError as e:
        return web.json_response({"error": str(e)}, status=400)
    return web.json_response(page)


async def healthz_handler(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


def create_app(processor: WebhookProcessor, gate: WebhookSecurityGate, repo: billing_db.BillingRepository,
               *, admin_token: str = ADMIN_API_TOKEN, production: bool = IS_PRODUCTION) -> web.Application:
    app = web.Application()
    app[PROCESSOR_KEY] = processor
    app[GATE_KEY] = gate
    app[REPO_KEY] = repo
    app[ADMIN_TOKEN_KEY] = admin_token
    app[PRODUCTION_KEY] = production
    app.router.add_post("/webhooks/zarinpal", zarinpal_webhook_handler)
    app.router.add_get("/webhooks/events", webhook_events_handler)
    app.router.add_get("/healthz", healthz_handler)
    return app


# ──────────────────────────────────────────────────────────────────────────────
# Main
# ──────────────────────────────────────────────────────────────────────────────
async def rate_limiter_cleanup_loop(shutdown_event: asyncio.Event, limiter: InMemoryRateLimiter) -> None:
    while not shutdown_event.is_set():
        dropped = limiter.cleanup()
        if dropped:
            logger.debug("Rate limiter: dropped %d stale windows", dropped)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=WEBHOOK_RATE_WINDOW_SEC)
            break
        except asyncio.TimeoutError:
            continue


async def serve(services: Services) -> None:
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, shutdown_event.set)

    app = create_app(services.processor, services.gate, services.repo)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, WEBHOOK_HOST, WEBHOOK_PORT)
    await site.start()
    logger.info("Webhook server listening on %s:%s", WEBHOOK_HOST, WEBHOOK_PORT)

    tasks = [asyncio.create_task(billing_loop(shutdown_event, services.subscriptions), name="billing_loop")]
    if isinstance(services.rate_limiter, InMemoryRateLimiter):
        tasks.append(asyncio.create_task(
            rate_limiter_cleanup_loop(shutdown_event, services.rate_limiter), name="rate_limiter_cleanup",
        ))
    try:
        await shutdown_event.wait()
        logger.warning("Shutdown signal received, stopping")
    finally:
        shutdown_event.set()
        for t in tasks:
            t.cancel()
        for t in tasks:
            with suppress(asyncio.CancelledError):
                await t
        await runner.cleanup()
        services.gateway.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="billing", description="Payman recurring billing engine")
    parser.add_argument("--once", action="store_true", help="run one billing pass and exit")
    args = parser.parse_args(argv)

    setup_logging()
    billing_db.init_billing_db()
    logger.info("Billing DB initialized")
    services = build_services()

    if args.once:
        result = asyncio.run(run_once(services.subscriptions))
        services.gateway.close()
        return 1 if result.aborted else 0
    asyncio.run(serve(services))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
