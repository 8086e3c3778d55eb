"""zbot entry point.

Initializes all components and starts polling:
  Settings -> CredentialPool -> GeminiProvider -> ModelGateway
  -> ToolRegistry -> ToolInvocationLoop -> ActionDispatcher
  -> ResponseEngine -> TelegramBot
"""

from __future__ import annotations

import asyncio
import logging
import sys

import httpx

from zbot.channels.telegram import TelegramBot, TelegramChannel
from zbot.config import Settings
from zbot.engine.credentials import CredentialPool
from zbot.engine.dispatcher import ActionDispatcher
from zbot.engine.gateway import ModelGateway
from zbot.engine.message_store import MessageStore
from zbot.engine.orchestrator import ResponseEngine
from zbot.engine.prompts import build_system_prompt
from zbot.engine.provider import GeminiProvider
from zbot.engine.tool_loop import ToolInvocationLoop
from zbot.engine.tools import ToolRegistry
from zbot.tools import register_builtin_tools

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for shutdown.
    """
    pool = CredentialPool(
        settings.api_keys,
        cooldown=settings.rate_limit_cooldown_s,
        escalated_cooldown=settings.rate_limit_daily_s,
        models=settings.model_chain,
    )

    # Separate client for tools and media (NOT the provider's -- that one carries the API base)
    web_http = httpx.AsyncClient(timeout=httpx.Timeout(connect=10, read=30, write=10, pool=10))
    registry = ToolRegistry()
    register_builtin_tools(registry, web_http)

    provider = GeminiProvider(settings, system_prompt=lambda: build_system_prompt(registry))
    await provider.start()

    gateway = ModelGateway(provider, pool, settings, media_http=web_http)
    store = MessageStore(window=settings.message_window)
    engine = ResponseEngine(
        gateway,
        ToolInvocationLoop(gateway, registry, settings),
        ActionDispatcher(store, settings),
        settings,
    )

    # Read timeout must outlast the getUpdates long poll
    telegram_http = httpx.AsyncClient(timeout=httpx.Timeout(connect=10, read=120, write=10, pool=10))
    channel = TelegramChannel(settings.telegram_bot_token, telegram_http)
    bot = TelegramBot(channel, engine, store, allowed_users=settings.allowed_user_ids)

    logger.info("Tools: %s", ", ".join(registry.names()) or "none")
    return {
        "pool": pool,
        "provider": provider,
        "gateway": gateway,
        "engine": engine,
        "web_http": web_http,
        "telegram_http": telegram_http,
        "bot": bot,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down zbot...")

    bot = components.get("bot")
    if bot:
        await bot.close()

    for key in ("telegram_http", "web_http"):
        http = components.get(key)
        if http:
            await http.aclose()

    provider = components.get("provider")
    if provider:
        await provider.close()

    logger.info("zbot shutdown complete.")


async def run(settings: Settings) -> None:
    components = await create_components(settings)
    try:
        await components["bot"].start()
    finally:
        await shutdown_components(components)


def main() -> None:
    settings = Settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    if not settings.telegram_bot_token:
        logger.error("TELEGRAM_BOT_TOKEN not set")
        sys.exit(1)
    if not settings.api_keys:
        logger.error("GEMINI_API_KEY not set (comma separate several keys to enable rotation)")
        sys.exit(1)

    logger.info("Starting zbot (models: %s, %d API key(s))", ", ".join(settings.model_chain), len(settings.api_keys))
    asyncio.run(run(settings))


if __name__ == "__main__":
    main()
