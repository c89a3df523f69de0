import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from cierrebot.api.routes import router
from cierrebot.config import Settings
from cierrebot.database import create_tables, make_engine, make_session_factory
from cierrebot.graph.agents import AnthropicInference
from cierrebot.graph.router import Inference, IntentRouter, Transport
from cierrebot.services.batching import BatchAggregator
from cierrebot.services.ledger import LedgerStore, SqlLedgerStore
from cierrebot.services.ledger_rows import LedgerLayout
from cierrebot.services.mutations import MutationQueue
from cierrebot.services.row_resolver import DateKeyedRowResolver
from cierrebot.services.transport import TelegramTransport
from cierrebot.services.wizard import SessionStore

logger = logging.getLogger(__name__)


def build_intent_router(
    settings: Settings,
    store: LedgerStore,
    transport: Transport,
    inference: Inference,
) -> IntentRouter:
    layout = LedgerLayout(settings.team_names)
    resolver = DateKeyedRowResolver(store, layout, settings.ledger_sheet, settings.ledger_first_row)
    return IntentRouter(
        settings=settings,
        sessions=SessionStore(settings, store, resolver, layout),
        mutations=MutationQueue(store, resolver),
        resolver=resolver,
        layout=layout,
        transport=transport,
        inference=inference,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    engine = None
    store = app.state.ledger
    if store is None:
        engine = make_engine(settings.ledger_database_url)
        await create_tables(engine)
        store = SqlLedgerStore(make_session_factory(engine))
        logger.info("Ledger tables created / verified.")

    owned_transport = None
    transport = app.state.transport
    if transport is None:
        if not settings.telegram_token:
            logger.warning("TELEGRAM_TOKEN is not set; replies will fail.")
        transport = owned_transport = TelegramTransport(settings.telegram_token)
    inference = app.state.inference or AnthropicInference(
        transport.fetch_attachment, model=settings.anthropic_model
    )

    intent_router = build_intent_router(settings, store, transport, inference)
    await intent_router.resolver.ensure_headers()
    aggregator = BatchAggregator(intent_router.handle, window=settings.batch_window_seconds)

    app.state.intent_router = intent_router
    app.state.aggregator = aggregator
    yield

    await aggregator.aclose()
    if owned_transport is not None:
        await owned_transport.aclose()
    if engine is not None:
        await engine.dispose()


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

def create_app(
    settings: Settings | None = None,
    ledger: LedgerStore | None = None,
    transport: Transport | None = None,
    inference: Inference | None = None,
) -> FastAPI:
    settings = settings or Settings.load()
    logging.basicConfig(level=settings.log_level)

    app = FastAPI(title="cierrebot", lifespan=lifespan)
    app.state.settings = settings
    app.state.ledger = ledger
    app.state.transport = transport
    app.state.inference = inference
    app.include_router(router)
    return app


app = create_app()
