"""
Settlement ("cierre") wizard.

One ClosingSession per conversation walks a fixed sequence of questions:

    date -> team[0..T-1] -> loans -> expenses -> settled -> notes -> persisted

The expenses step only exists when Settings.include_expenses is on; without
it loans go straight to settled and expenses stay at 0.

Invalid input at any step re-prompts and leaves the session untouched. The
last step writes one ledger row (idempotent per date) and clears the
session; if that write fails the session stays on the notes step so the
operator can resend the notes to retry without redoing the whole wizard.

Sessions live in memory only and never expire.
"""

import datetime
import logging
import re
from dataclasses import dataclass, replace

from cierrebot.config import Settings
from cierrebot.graph.state import ClosingSession, ClosingTotals, TeamRecord, WizardStep
from cierrebot.services.dates import extract_date_key
from cierrebot.services.ledger import LedgerStore
from cierrebot.services.ledger_rows import LedgerLayout, build_row
from cierrebot.services.numbers import extract_amounts, format_amount, round_units
from cierrebot.services.row_resolver import DateKeyedRowResolver

logger = logging.getLogger(__name__)

NO_NOTES = "sin observaciones"
_EMPTY_NOTES = {"", "-", "no", "ninguna", "nada"}
CANCEL_WORDS = {"cancelar", "/cancelar", "cancel", "salir", "/salir"}

_GENERIC_FAILURE = (
    "No pude guardar el cierre en la planilla. Los datos siguen cargados: "
    "reenviá las observaciones para reintentar, o escribí 'cancelar'."
)


class InvalidTransition(Exception):
    """The wizard tried to move between two steps that are not adjacent."""


@dataclass
class WizardReply:
    text: str
    done: bool = False
    totals: ClosingTotals | None = None
    row_index: int | None = None


def is_cancel_word(text: str) -> bool:
    return text.strip().lower() in CANCEL_WORDS


def _team_name_pattern(name: str) -> re.Pattern:
    # Word-bounded so "Publi 1" does not match inside "Publi 10".
    return re.compile(rf"(?<!\w){re.escape(name)}(?!\w)", re.IGNORECASE)


def _mentions(text: str, name: str) -> bool:
    return _team_name_pattern(name).search(text) is not None


class SessionStore:
    def __init__(
        self,
        settings: Settings,
        store: LedgerStore,
        resolver: DateKeyedRowResolver,
        layout: LedgerLayout,
    ) -> None:
        self.settings = settings
        self.store = store
        self.resolver = resolver
        self.layout = layout
        self._sessions: dict[str, ClosingSession] = {}

        after_loans = WizardStep.EXPENSES if settings.include_expenses else WizardStep.SETTLED
        self._transitions: set[tuple[WizardStep, WizardStep]] = {
            (WizardStep.DATE, WizardStep.TEAM),
            (WizardStep.TEAM, WizardStep.TEAM),
            (WizardStep.TEAM, WizardStep.LOANS),
            (WizardStep.LOANS, after_loans),
            (WizardStep.SETTLED, WizardStep.NOTES),
            (WizardStep.NOTES, WizardStep.PERSISTED),
        }
        if settings.include_expenses:
            self._transitions.add((WizardStep.EXPENSES, WizardStep.SETTLED))

        self._handlers = {
            WizardStep.DATE: self._on_date,
            WizardStep.TEAM: self._on_team,
            WizardStep.LOANS: self._on_loans,
            WizardStep.EXPENSES: self._on_expenses,
            WizardStep.SETTLED: self._on_settled,
            WizardStep.NOTES: self._on_notes,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def get(self, conversation_id: str) -> ClosingSession | None:
        return self._sessions.get(conversation_id)

    def is_active(self, conversation_id: str) -> bool:
        return conversation_id in self._sessions

    def start(self, conversation_id: str) -> str:
        existing = self._sessions.get(conversation_id)
        if existing:
            return f"Ya hay un cierre en curso.\n{self._prompt(existing)}"
        session = ClosingSession(conversation_id=conversation_id)
        self._sessions[conversation_id] = session
        logger.info("Closing started for %s", conversation_id)
        return f"Empezamos el cierre. Escribí 'cancelar' en cualquier momento para salir.\n{self._prompt(session)}"

    def cancel(self, conversation_id: str) -> bool:
        """Drop the session. Refused once the ledger write has started."""
        session = self._sessions.get(conversation_id)
        if session is None or session.persisting:
            return False
        del self._sessions[conversation_id]
        logger.info("Closing cancelled for %s at step %s", conversation_id, session.step.value)
        return True

    def current_prompt(self, conversation_id: str) -> str | None:
        session = self._sessions.get(conversation_id)
        return self._prompt(session) if session else None

    def _move(self, session: ClosingSession, step: WizardStep) -> None:
        if (session.step, step) not in self._transitions:
            raise InvalidTransition(f"{session.step.value} -> {step.value}")
        session.step = step

    def _prompt(self, session: ClosingSession) -> str:
        step = session.step
        if step is WizardStep.DATE:
            return "¿De qué fecha es el cierre? (dd/mm/aaaa)"
        if step is WizardStep.TEAM:
            name = self.layout.team_names[session.team_index]
            return f"{name}: enviá depósitos y retiros (o venta, depósitos y retiros)."
        if step is WizardStep.LOANS:
            return "Préstamos: enviá pedidos y devueltos."
        if step is WizardStep.EXPENSES:
            return "Gastos del día: enviá el monto."
        if step is WizardStep.SETTLED:
            return "¿Cuánto se rindió al banco?"
        return "Observaciones (o 'no' si no hay)."

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def advance(self, conversation_id: str, text: str) -> WizardReply:
        session = self._sessions.get(conversation_id)
        if session is None:
            return WizardReply("No hay ningún cierre en curso. Escribí /cierre para empezar.")
        if session.persisting:
            return WizardReply("Todavía estoy guardando el cierre, esperá un momento.")
        handler = self._handlers.get(session.step)
        if handler is None:
            raise InvalidTransition(f"no handler for {session.step.value}")
        return await handler(session, text or "")

    def _retry(self, session: ClosingSession, problem: str) -> WizardReply:
        return WizardReply(f"{problem}\n{self._prompt(session)}")

    def _amounts(self, text: str, counts: tuple[int, ...]) -> list[float] | None:
        amounts = extract_amounts(text)
        if amounts is None or len(amounts) not in counts:
            return None
        return amounts

    async def _on_date(self, session: ClosingSession, text: str) -> WizardReply:
        lowered = text.strip().lower()
        if lowered == "hoy":
            key = datetime.date.today().strftime("%d/%m/%Y")
        elif lowered == "ayer":
            key = (datetime.date.today() - datetime.timedelta(days=1)).strftime("%d/%m/%Y")
        else:
            key = extract_date_key(text)
        if key is None:
            return self._retry(session, "No entendí la fecha.")

        session.date_key = key
        self._move(session, WizardStep.TEAM)
        session.team_index = 0
        return WizardReply(f"Fecha: {key}.\n{self._prompt(session)}")

    async def _on_team(self, session: ClosingSession, text: str) -> WizardReply:
        name = self.layout.team_names[session.team_index]
        for other in self.layout.team_names:
            if other != name and _mentions(text, other):
                return self._retry(session, f"Ahora van los montos de {name}, no de {other}.")
        # "Publi 1: 5000 4000" must not read the 1 in the team name as an amount
        text = _team_name_pattern(name).sub(" ", text)
        amounts = self._amounts(text, (2, 3))
        if amounts is None:
            return self._retry(session, "Necesito dos montos (depósitos y retiros) o tres (venta, depósitos y retiros).")

        if len(amounts) == 3:
            sale, deposits, withdrawals = amounts
        else:
            deposits, withdrawals = amounts
            sale = round(deposits - withdrawals, 2)
        if deposits < 0 or withdrawals < 0:
            return self._retry(session, "Depósitos y retiros no pueden ser negativos.")

        commission = round_units(deposits * self.settings.commission_rate)
        if self.settings.net_formula == "blend":
            net = round_units(sale + deposits - withdrawals - commission)
        else:
            net = round_units(sale - commission)

        record: TeamRecord = {
            "sale": sale,
            "deposits": deposits,
            "withdrawals": withdrawals,
            "commission": commission,
            "net": net,
        }
        session.teams[name] = record

        if session.team_index + 1 < len(self.layout.team_names):
            self._move(session, WizardStep.TEAM)
            session.team_index += 1
        else:
            self._move(session, WizardStep.LOANS)

        line = (
            f"{name}: venta {format_amount(sale)}, comisión {format_amount(commission)}, "
            f"neto {format_amount(net)}."
        )
        return WizardReply(f"{line}\n{self._prompt(session)}")

    async def _on_loans(self, session: ClosingSession, text: str) -> WizardReply:
        amounts = self._amounts(text, (2,))
        if amounts is None or min(amounts) < 0:
            return self._retry(session, "Necesito dos montos: préstamos pedidos y devueltos.")
        session.loans_requested, session.loans_returned = amounts
        if self.settings.include_expenses:
            self._move(session, WizardStep.EXPENSES)
        else:
            session.expenses = 0.0
            self._move(session, WizardStep.SETTLED)
        return WizardReply(self._prompt(session))

    async def _on_expenses(self, session: ClosingSession, text: str) -> WizardReply:
        amounts = self._amounts(text, (1,))
        if amounts is None or amounts[0] < 0:
            return self._retry(session, "Necesito un solo monto de gastos.")
        session.expenses = amounts[0]
        self._move(session, WizardStep.SETTLED)
        return WizardReply(self._prompt(session))

    async def _on_settled(self, session: ClosingSession, text: str) -> WizardReply:
        amounts = self._amounts(text, (1,))
        if amounts is None or amounts[0] < 0:
            return self._retry(session, "Necesito un solo monto: lo rendido al banco.")
        session.amount_settled = amounts[0]
        self._move(session, WizardStep.NOTES)
        return WizardReply(self._prompt(session))

    async def _on_notes(self, session: ClosingSession, text: str) -> WizardReply:
        notes = text.strip()
        if notes.lower() in _EMPTY_NOTES:
            notes = NO_NOTES
        return await self._persist(session, notes)

    # ------------------------------------------------------------------
    # Terminal transition
    # ------------------------------------------------------------------

    async def _totals(self, session: ClosingSession) -> ClosingTotals:
        total_net = round_units(sum(t["net"] for t in session.teams.values()) - session.expenses)
        carry_over = await self.resolver.previous_pending(session.date_key)
        total_due = round_units(total_net + carry_over)
        shortfall = round_units(total_due - session.amount_settled)

        alerts = []
        if shortfall > 0:
            alerts.append(f"Falta rendir ${format_amount(shortfall)}.")
        elif shortfall < 0:
            alerts.append(f"Se rindió ${format_amount(-shortfall)} más de lo que correspondía.")
        if session.loans_requested != session.loans_returned:
            outstanding = session.loans_requested - session.loans_returned
            alerts.append(f"Préstamo pendiente: ${format_amount(outstanding)}.")
        if total_net < 0:
            alerts.append("Neto total negativo, revisar saldos de los equipos.")
        if session.teams:
            worst_name, worst = min(session.teams.items(), key=lambda item: item[1]["net"])
            if worst["net"] < 0:
                alerts.append(
                    f"El equipo {worst_name} tiene el neto más negativo (${format_amount(worst['net'])})."
                )

        return {
            "total_net": total_net,
            "carry_over": carry_over,
            "total_due": total_due,
            "shortfall": shortfall,
            "alerts": alerts,
        }

    async def _persist(self, session: ClosingSession, notes: str) -> WizardReply:
        session.persisting = True
        try:
            totals = await self._totals(session)
            row_index = await self.resolver.next_row(session.date_key)
            row = build_row(self.layout, replace(session, notes=notes), totals)
            await self.store.write_row(self.resolver.sheet, row_index, row)
        except Exception:
            logger.exception("Closing %s for %s failed to persist", session.date_key, session.conversation_id)
            return WizardReply(_GENERIC_FAILURE)
        finally:
            session.persisting = False

        session.notes = notes
        self._move(session, WizardStep.PERSISTED)
        del self._sessions[session.conversation_id]
        logger.info(
            "Closing %s for %s written to row %d (shortfall %s)",
            session.date_key, session.conversation_id, row_index, totals["shortfall"],
        )
        return WizardReply(
            self._summary(session, totals, row_index),
            done=True,
            totals=totals,
            row_index=row_index,
        )

    def _summary(self, session: ClosingSession, totals: ClosingTotals, row_index: int) -> str:
        lines = [f"Cierre {session.date_key} guardado (fila {row_index})."]
        for name, team in session.teams.items():
            lines.append(
                f"{name}: venta {format_amount(team['sale'])} | "
                f"comisión {format_amount(team['commission'])} | neto {format_amount(team['net'])}"
            )
        lines.append(
            f"Préstamos: pedidos {format_amount(session.loans_requested)} / "
            f"devueltos {format_amount(session.loans_returned)}"
        )
        if self.settings.include_expenses:
            lines.append(f"Gastos: {format_amount(session.expenses)}")
        lines += [
            f"Neto total: {format_amount(totals['total_net'])}",
            f"Arrastre anterior: {format_amount(totals['carry_over'])}",
            f"Total a rendir: {format_amount(totals['total_due'])}",
            f"Rendido: {format_amount(session.amount_settled)}",
            f"Diferencia: {format_amount(totals['shortfall'])}",
            f"Observaciones: {session.notes}",
        ]
        if totals["alerts"]:
            lines.append("Alertas:")
            lines += [f"- {alert}" for alert in totals["alerts"]]
        return "\n".join(lines)
