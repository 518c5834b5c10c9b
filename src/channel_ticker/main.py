# src/channel_ticker/main.py
import asyncio

import structlog
from dotenv import load_dotenv
from redis.asyncio import Redis

from channel_ticker.config import settings_from_env
from channel_ticker.quotes.cache import InFlightCoordinator, QuoteCache
from channel_ticker.quotes.client import MarketDataClient, MarketDataConfig
from channel_ticker.quotes.resolver import QuoteResolver
from channel_ticker.surfaces.discord_rest import DiscordChannelRenamer, DiscordRenamerConfig
from channel_ticker.ticker.scheduler import TickerScheduler
from storage.redis_config import RedisConfigStore

load_dotenv()
log = structlog.get_logger()


async def main():
    settings = settings_from_env()  # raises if credentials are missing

    # ----- Upstream quotes -----
    market_data = MarketDataClient(
        MarketDataConfig(
            api_base=settings.api_base,
            api_key=settings.api_key,
            api_bearer=settings.api_bearer,
            timeout_s=settings.http_timeout_s,
        )
    )
    resolver = QuoteResolver(
        market_data,
        cache=QuoteCache(ttl_s=settings.cache_ttl_ms / 1000.0),
        inflight=InFlightCoordinator(),
    )

    # ----- Surfaces + config -----
    renamer = DiscordChannelRenamer(
        DiscordRenamerConfig(
            bot_token=settings.discord_token,
            api_base=settings.discord_api_base,
            timeout_s=settings.http_timeout_s,
        )
    )
    redis_client = Redis.from_url(settings.redis_url)
    store = RedisConfigStore(redis_client)

    scheduler = TickerScheduler(
        store,
        resolver,
        renamer,
        default_interval_ms=settings.update_interval_ms,
        max_backoff_multiplier=settings.max_backoff_multiplier,
    )

    await market_data.start()
    await renamer.start()
    try:
        started = await scheduler.bootstrap()
        log.info("channel_ticker_started", groups=started)
        # the per-surface tasks do the work; park until cancelled
        await asyncio.Event().wait()
    finally:
        await scheduler.stop_all()
        for obj in (market_data, renamer):
            try:
                await obj.stop()
            except Exception as e:
                log.warning("shutdown_close_failed", component=type(obj).__name__, err=str(e))
        await redis_client.aclose()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
