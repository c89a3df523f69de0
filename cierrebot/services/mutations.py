"""
Confirmation gate for ledger writes.

Writes suggested from free-form messages or images never touch the ledger
directly. They are proposed, shown to the operator, and applied only after an
explicit "si". A newer proposal replaces the pending one.

Confirming is best effort: mutations run in order, and one failing does not
stop the rest or roll back the ones already applied.
"""

import logging
from dataclasses import dataclass, field

from cierrebot.graph.state import Mutation
from cierrebot.services.ledger import LedgerStore
from cierrebot.services.numbers import format_amount
from cierrebot.services.row_resolver import DateKeyedRowResolver

logger = logging.getLogger(__name__)

CONFIRM_WORDS = {"si", "sí", "ok", "dale", "confirmo", "confirmar", "yes"}
CANCEL_WORDS = {"no", "cancelar", "cancela", "anular", "descartar"}


def _token(text: str) -> str:
    return (text or "").strip().lower().rstrip(".!")


def is_confirm(text: str) -> bool:
    return _token(text) in CONFIRM_WORDS


def is_cancel(text: str) -> bool:
    return _token(text) in CANCEL_WORDS


@dataclass
class ConfirmResult:
    applied: list[Mutation] = field(default_factory=list)
    failed: list[Mutation] = field(default_factory=list)

    def render(self) -> str:
        if not self.failed:
            return f"Listo, apliqué {len(self.applied)} cambio(s)."
        lines = [f"Apliqué {len(self.applied)} cambio(s); {len(self.failed)} fallaron:"]
        lines += [f"- {describe(m)}" for m in self.failed]
        return "\n".join(lines)


def _render_value(value) -> str:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return format_amount(value)
    return str(value)


def describe(mutation: Mutation) -> str:
    target = mutation.get("cell") or f"{mutation.get('column')}@{mutation.get('date_key')}"
    where = f"{mutation['sheet']}!{target}"
    if mutation.get("action") == "clear":
        line = f"BORRAR {where}"
    else:
        line = f"ESCRIBIR {where} = {_render_value(mutation.get('value'))}"
    provenance = mutation.get("provenance")
    return f"{line} ({provenance})" if provenance else line


class MutationQueue:
    def __init__(self, store: LedgerStore, resolver: DateKeyedRowResolver) -> None:
        self.store = store
        self.resolver = resolver
        self._pending: dict[str, list[Mutation]] = {}

    def has_pending(self, conversation_id: str) -> bool:
        return conversation_id in self._pending

    def pending(self, conversation_id: str) -> list[Mutation]:
        return list(self._pending.get(conversation_id, []))

    def propose(self, conversation_id: str, mutations: list[Mutation]) -> str:
        if not mutations:
            self._pending.pop(conversation_id, None)
            return "No encontré cambios para aplicar."
        replaced = conversation_id in self._pending
        self._pending[conversation_id] = list(mutations)
        logger.info(
            "Proposed %d mutation(s) for %s%s",
            len(mutations), conversation_id, " (replacing previous proposal)" if replaced else "",
        )
        lines = ["Cambios propuestos:"]
        lines += [f"{i}. {describe(m)}" for i, m in enumerate(mutations, start=1)]
        lines.append("¿Confirmás? (si / no)")
        return "\n".join(lines)

    def cancel(self, conversation_id: str) -> bool:
        dropped = self._pending.pop(conversation_id, None)
        if dropped is not None:
            logger.info("Discarded %d mutation(s) for %s", len(dropped), conversation_id)
        return dropped is not None

    async def _target_cell(self, mutation: Mutation) -> str:
        if mutation.get("cell"):
            return mutation["cell"]
        date_key = mutation.get("date_key")
        column = mutation.get("column")
        if not date_key or not column:
            raise ValueError(f"Mutation has no target: {mutation!r}")
        row = await self.resolver.find_row(date_key)
        if row is None:
            if mutation.get("action") == "clear":
                raise LookupError(f"No ledger row for {date_key}")
            row = await self.resolver.next_row(date_key)
            # New settlement row: stamp its date so later lookups find it.
            await self.store.write_cell(mutation["sheet"], f"A{row}", date_key)
        return f"{column}{row}"

    async def confirm(self, conversation_id: str) -> ConfirmResult | None:
        mutations = self._pending.pop(conversation_id, None)
        if mutations is None:
            return None

        result = ConfirmResult()
        for mutation in mutations:
            try:
                cell = await self._target_cell(mutation)
                if mutation.get("action") == "clear":
                    await self.store.clear_cell(mutation["sheet"], cell)
                else:
                    await self.store.write_cell(mutation["sheet"], cell, mutation.get("value"))
            except Exception as exc:
                logger.error("Mutation %s for %s failed: %s", describe(mutation), conversation_id, exc)
                result.failed.append(mutation)
                continue
            result.applied.append(mutation)
        logger.info(
            "Confirmed mutations for %s: %d applied, %d failed",
            conversation_id, len(result.applied), len(result.failed),
        )
        return result
