"""Entry point: aiohttp API server + pending-action reconciler."""

import asyncio
import signal
import sys

import aiohttp.web
import structlog

from postflow.config import Settings
from postflow.database.connection import close_pool, create_pool_with_retry
from postflow.services.late_client import LateClient
from postflow.services.reconciler import run_reconciler
from postflow.utils.logging import configure_logging
from postflow.web.app import create_app
from postflow.web.auth import HttpIdentityResolver


def main() -> None:
    """Run the API until SIGINT/SIGTERM."""
    configure_logging()
    log = structlog.get_logger()
    try:
        config = Settings()
    except Exception as e:
        log.error("config_load_failed", error=str(e), exc_info=True)
        sys.exit(1)
    configure_logging(config.LOG_LEVEL)
    if not config.LATE_API_KEY:
        log.warning("late_api_key_missing", msg="Publishing will be rejected by LATE until LATE_API_KEY is set")
    if not config.AUTH_VERIFY_URL:
        log.warning("auth_verify_url_missing", msg="Agency routes will answer 401 until AUTH_VERIFY_URL is set")

    async def run() -> None:
        loop = asyncio.get_running_loop()
        stop = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                pass

        pool = await create_pool_with_retry(config.DATABASE_URL)
        resolver = (
            HttpIdentityResolver(config.AUTH_VERIFY_URL, config.AUTH_VERIFY_TOKEN)
            if config.AUTH_VERIFY_URL
            else None
        )
        late = LateClient(config.LATE_API_URL, config.LATE_API_KEY)
        app = create_app(
            pool,
            late,
            resolver,
            supported_platforms=config.SUPPORTED_PLATFORMS,
            both_platforms=config.BOTH_PLATFORMS,
            default_timezone=config.DEFAULT_TIMEZONE,
            batch_concurrency=config.BATCH_APPROVAL_CONCURRENCY,
            calendar_cache_ttl=config.CALENDAR_CACHE_TTL_SEC,
            portal_base_url=config.PORTAL_BASE_URL,
        )
        runner = aiohttp.web.AppRunner(app)
        await runner.setup()
        site = aiohttp.web.TCPSite(runner, "0.0.0.0", config.HTTP_PORT)
        await site.start()
        log.info("http_server_started", port=config.HTTP_PORT)

        reconciler_task = asyncio.create_task(
            run_reconciler(pool, interval=config.RECONCILER_INTERVAL_SEC, service=late)
        )
        try:
            await stop.wait()
        finally:
            reconciler_task.cancel()
            try:
                await reconciler_task
            except asyncio.CancelledError:
                pass
            await runner.cleanup()
            await close_pool(pool)
            log.info("shutdown")

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        log.info("shutdown")
    except Exception as e:
        log.error("fatal", exc_info=True, error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
