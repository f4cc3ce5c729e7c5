import asyncio
import logging
import signal
from pathlib import Path

from dotenv import load_dotenv
from openai import AsyncOpenAI

from core.assistant import Assistant
from core.config import Settings
from core.profiles import ProfileStore
from core.prompts import PromptConfig
from core.resolver import IntentResolver
from core.tools import ToolDispatcher
from core.wallet import TokenWallet
from transports.whatsapp import WahaClient, WhatsAppTransport


async def main():
    load_dotenv()
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level, format="%(asctime)s %(levelname)s :: %(message)s"
    )

    missing = settings.missing()
    if missing:
        raise SystemExit(f"Missing required environment variables: {', '.join(missing)}")

    client = AsyncOpenAI(
        api_key=settings.openai_api_key,
        timeout=settings.openai_timeout,
        max_retries=settings.openai_max_retries,
    )
    prompts = PromptConfig(
        override_path=Path(settings.prompts_path) if settings.prompts_path else None,
        token_symbol=settings.token_symbol,
    )
    store = ProfileStore(settings.db_path)
    wallet = TokenWallet(
        rpc_url=settings.rpc_url,
        token_address=settings.token_address,
        treasury_private_key=settings.treasury_private_key,
        decimals=settings.token_decimals,
        symbol=settings.token_symbol,
        bootstrap_token_amount=settings.bootstrap_token_amount,
        bootstrap_gas_amount=settings.bootstrap_gas_amount,
        tx_timeout=settings.tx_timeout,
    )
    dispatcher = ToolDispatcher(
        store,
        wallet,
        explorer_tx_url=settings.explorer_tx_url,
        token_decimals=settings.token_decimals,
    )
    resolver = IntentResolver(
        client,
        prompts,
        model=settings.model,
        tools=dispatcher.registry.definitions(),
    )
    waha = WahaClient(
        settings.waha_api_url,
        api_key=settings.waha_api_key,
        session=settings.waha_session,
    )
    assistant = Assistant(
        store=store,
        resolver=resolver,
        dispatcher=dispatcher,
        transport=waha,
        allowed_senders=settings.allowed_numbers,
        history_limit=settings.history_limit,
        onboarding_history_limit=settings.onboarding_history_limit,
    )
    transport = WhatsAppTransport(assistant, host=settings.webhook_host, port=settings.webhook_port)

    stop_event = asyncio.Event()

    def _signal_handler(*_):
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            signal.signal(sig, lambda *_: stop_event.set())

    transport_task = asyncio.create_task(transport.start())

    await stop_event.wait()

    await transport.stop()
    await transport_task
    await waha.close()
    await client.close()
    store.close()


if __name__ == "__main__":
    asyncio.run(main())
