"""
Pytest configuration and fixtures
"""
import asyncio

import pytest

from cierrebot.config import Settings
from cierrebot.main import build_intent_router
from cierrebot.services.ledger import InMemoryLedgerStore, LedgerError
from cierrebot.services.ledger_rows import LedgerLayout
from cierrebot.services.mutations import MutationQueue
from cierrebot.services.row_resolver import DateKeyedRowResolver
from cierrebot.services.wizard import SessionStore

SHEET = "Cierres"


class FakeTransport:
    """Collects outbound replies instead of calling Telegram."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send(self, conversation_id: str, text: str) -> None:
        self.sent.append((conversation_id, text))

    async def fetch_attachment(self, ref: str) -> bytes:
        return b"\x89PNG fake " + ref.encode()

    def texts(self, conversation_id: str) -> list[str]:
        return [text for cid, text in self.sent if cid == conversation_id]


class FakeInference:
    def __init__(self) -> None:
        self.extraction: dict = {"items": [], "summary": ""}
        self.reply = "Escribí /cierre para cargar un cierre."
        self.fail = False
        self.classify_calls: list[tuple[list[str], str]] = []
        self.converse_calls: list[tuple[str, list[dict], str]] = []

    async def classify_attachments(self, refs, context_text):
        self.classify_calls.append((list(refs), context_text))
        if self.fail:
            raise RuntimeError("model unavailable")
        return self.extraction

    async def converse(self, system_prompt, history, user_content):
        self.converse_calls.append((system_prompt, list(history), user_content))
        if self.fail:
            raise RuntimeError("model unavailable")
        return self.reply


class FlakyLedger(InMemoryLedgerStore):
    """In-memory ledger that can fail chosen cells, whole rows, or hold row writes open."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_cells: set[str] = set()
        self.fail_rows = False
        self.row_gate: asyncio.Event | None = None
        self.row_writes: list[int] = []

    async def write_cell(self, sheet, cell_ref, value):
        if cell_ref in self.fail_cells:
            raise LedgerError(f"write {cell_ref} refused")
        await super().write_cell(sheet, cell_ref, value)

    async def write_row(self, sheet, row_index, values):
        if self.row_gate is not None:
            await self.row_gate.wait()
        if self.fail_rows:
            raise LedgerError("backend down")
        self.row_writes.append(row_index)
        await super().write_row(sheet, row_index, values)


@pytest.fixture
def settings() -> Settings:
    return Settings(ledger_sheet=SHEET, batch_window_seconds=0.02)


@pytest.fixture
def ledger() -> FlakyLedger:
    return FlakyLedger()


@pytest.fixture
def layout(settings) -> LedgerLayout:
    return LedgerLayout(settings.team_names)


@pytest.fixture
def resolver(ledger, layout, settings) -> DateKeyedRowResolver:
    return DateKeyedRowResolver(ledger, layout, settings.ledger_sheet, settings.ledger_first_row)


@pytest.fixture
def sessions(settings, ledger, resolver, layout) -> SessionStore:
    return SessionStore(settings, ledger, resolver, layout)


@pytest.fixture
def mutation_queue(ledger, resolver) -> MutationQueue:
    return MutationQueue(ledger, resolver)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def inference() -> FakeInference:
    return FakeInference()


@pytest.fixture
def intent_router(settings, ledger, transport, inference):
    return build_intent_router(settings, ledger, transport, inference)


def make_intent(conversation_id: str, *texts: str, images: list[str] | None = None) -> dict:
    return {
        "conversation_id": conversation_id,
        "text": "\n".join(texts),
        "texts": list(texts),
        "image_refs": list(images or []),
    }


# Five teams at (5.000.000 deposits, 4.000.000 withdrawals), then loans and settlement.
CLOSING_INPUTS = [
    "01/02/2026",
    "5000000 4000000",
    "5.000.000 4.000.000",
    "5000000 4000000",
    "5000000 4000000",
    "5000000 4000000",
    "9000000 3000000",
    "150000",
    "20000000",
    "sin obs",
]
