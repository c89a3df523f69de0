"""
Intent routing.

Every drained batch becomes one Intent and is routed here, one at a time per
conversation (KeyedLock), so a wizard step or a confirmation that is still
writing to the ledger never overlaps with the next message of the same chat.

Routing order:
  1. pending mutations + confirm / cancel word -> MutationQueue
  2. active closing session -> cancel or SessionStore.advance
  3. trigger phrase -> SessionStore.start
  4. /resumen [fecha] -> ledger row summary
  5. anything else -> inference (proposed mutations or a conversational reply)

Collaborator failures stop here: the operator gets a generic message and the
session, batch and mutation state stay as they were before the failed call.
"""

import logging
from typing import Any, Protocol

from cierrebot.config import Settings
from cierrebot.graph.agents import load_prompt
from cierrebot.graph.state import Intent, Mutation
from cierrebot.services.dates import extract_date_key, normalize_date_key
from cierrebot.services.ledger_rows import LedgerLayout
from cierrebot.services.locks import KeyedLock
from cierrebot.services.mutations import MutationQueue, is_cancel, is_confirm
from cierrebot.services.numbers import format_amount, parse_amount
from cierrebot.services.row_resolver import DateKeyedRowResolver
from cierrebot.services.wizard import SessionStore, is_cancel_word

logger = logging.getLogger(__name__)

TRIGGER_PHRASES = {"/cierre", "cierre", "cerrar caja"}
SUMMARY_COMMAND = "/resumen"
_CORRECTION_WORDS = {"corregir", "cambiar", "borrar", "cargar"}
_HISTORY_MESSAGES = 6  # three user/assistant exchanges
_MAX_AMOUNT = 1e12

_GENERIC_FAILURE = "Hubo un problema procesando tu mensaje. Probá de nuevo en un momento."
_TOO_LARGE = "El mensaje es demasiado largo para procesarlo. Mandalo en partes más chicas."


class PayloadTooLarge(Exception):
    """Inference payload above Settings.max_prompt_chars; no call is made."""


class Transport(Protocol):
    async def send(self, conversation_id: str, text: str) -> None: ...


class Inference(Protocol):
    async def classify_attachments(self, refs: list[str], context_text: str) -> dict: ...

    async def converse(self, system_prompt: str, history: list[dict], user_content: str) -> str: ...


class IntentRouter:
    def __init__(
        self,
        settings: Settings,
        sessions: SessionStore,
        mutations: MutationQueue,
        resolver: DateKeyedRowResolver,
        layout: LedgerLayout,
        transport: Transport,
        inference: Inference,
    ) -> None:
        self.settings = settings
        self.sessions = sessions
        self.mutations = mutations
        self.resolver = resolver
        self.layout = layout
        self.transport = transport
        self.inference = inference
        self._locks = KeyedLock()
        self._history: dict[str, list[dict]] = {}
        self._assistant_prompt = load_prompt("assistant.txt")

    async def handle(self, intent: Intent) -> None:
        """BatchAggregator hand-off: route one intent and send the reply."""
        conversation_id = intent["conversation_id"]
        async with self._locks.hold(conversation_id):
            try:
                reply = await self.route(intent)
            except PayloadTooLarge:
                logger.warning("Payload too large for %s (%d chars)", conversation_id, len(intent["text"]))
                reply = _TOO_LARGE
            except Exception:
                logger.exception("Routing failed for %s", conversation_id)
                reply = _GENERIC_FAILURE
            if reply:
                await self.transport.send(conversation_id, reply)

    async def route(self, intent: Intent) -> str | None:
        conversation_id = intent["conversation_id"]
        text = intent["text"].strip()
        lowered = text.lower()

        if self.mutations.has_pending(conversation_id):
            if is_confirm(text):
                result = await self.mutations.confirm(conversation_id)
                return result.render() if result else None
            if is_cancel(text):
                self.mutations.cancel(conversation_id)
                return "Cambios descartados, no se escribió nada."

        if self.sessions.is_active(conversation_id):
            if is_cancel_word(text):
                if self.sessions.cancel(conversation_id):
                    return "Cierre cancelado. No se guardó nada."
                return "El cierre ya se está guardando y no se puede cancelar."
            reply = await self.sessions.advance(conversation_id, text)
            return reply.text

        if lowered in TRIGGER_PHRASES:
            return self.sessions.start(conversation_id)

        first_word = lowered.split()[0] if lowered else ""
        if first_word == SUMMARY_COMMAND:
            return await self._summary(text)

        return await self._fallback(intent, first_word)

    # ------------------------------------------------------------------
    # /resumen
    # ------------------------------------------------------------------

    async def _summary(self, text: str) -> str:
        argument = text[len(SUMMARY_COMMAND):].strip()
        if argument:
            key = extract_date_key(argument)
            if key is None:
                return f"No entendí la fecha '{argument}'. Usá dd/mm/aaaa, por ejemplo /resumen 01/02/2026."
        else:
            key = await self.resolver.latest_key()
        if key is None:
            return "No hay datos."
        row = await self.resolver.read_row(key)
        if row is None:
            return f"No hay un cierre cargado para {key}."

        lines = [f"Cierre {key}"]
        for label, value in zip(self.layout.headers()[1:], row[1:]):
            if value in ("", None):
                continue
            shown = format_amount(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else value
            lines.append(f"{label}: {shown}")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Free-form fallback
    # ------------------------------------------------------------------

    async def _fallback(self, intent: Intent, first_word: str) -> str | None:
        conversation_id = intent["conversation_id"]
        payload = intent["text"].strip()
        if len(payload) > self.settings.max_prompt_chars:
            raise PayloadTooLarge(conversation_id)

        if intent["image_refs"] or first_word in _CORRECTION_WORDS:
            extraction = await self.inference.classify_attachments(intent["image_refs"], payload)
            provenance = "imagen" if intent["image_refs"] else "mensaje"
            mutations = self._mutations_from(extraction, extract_date_key(payload), provenance)
            preview = self.mutations.propose(conversation_id, mutations)
            summary = (extraction.get("summary") or "").strip()
            return f"{summary}\n{preview}" if summary else preview

        if not payload:
            return None
        history = self._history.setdefault(conversation_id, [])
        reply = await self.inference.converse(self._assistant_prompt, history[-_HISTORY_MESSAGES:], payload)
        history.append({"role": "user", "content": payload})
        history.append({"role": "assistant", "content": reply})
        del history[:-_HISTORY_MESSAGES]
        return reply

    def _amount(self, raw: Any) -> float | None:
        if isinstance(raw, bool):
            return None
        if isinstance(raw, (int, float)):
            return round(float(raw), 2) if abs(raw) <= _MAX_AMOUNT else None
        return parse_amount(raw)

    def _mutations_from(self, extraction: dict, default_date: str | None, provenance: str) -> list[Mutation]:
        """Keep only extracted items whose field, date and amount pass local validation."""
        mutations: list[Mutation] = []
        for item in extraction.get("items", []):
            if not isinstance(item, dict):
                continue
            if not isinstance(item.get("field"), str) or not isinstance(item.get("team") or "", str):
                logger.warning("Dropping extracted item with a malformed field or team: %r", item)
                continue
            action = item.get("action") or "write"
            field = self.layout.resolve_field(item.get("field"), item.get("team"))
            date_key = normalize_date_key(item.get("date")) or default_date
            if action not in ("write", "clear") or field in (None, "date") or date_key is None:
                logger.warning("Dropping extracted item %r", item)
                continue

            value: Any = None
            if action == "write":
                if field == "notes":
                    value = str(item.get("text") or item.get("amount") or "").strip() or None
                else:
                    value = self._amount(item.get("amount"))
                if value is None:
                    logger.warning("Dropping extracted item without a valid value: %r", item)
                    continue

            mutations.append(
                {
                    "action": action,
                    "sheet": self.settings.ledger_sheet,
                    "cell": None,
                    "column": self.layout.column_for(field),
                    "date_key": date_key,
                    "value": value,
                    "provenance": f"{provenance}: {self.layout.label_for(field)}",
                }
            )
        return mutations
