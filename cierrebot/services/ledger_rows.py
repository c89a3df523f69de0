"""
Fixed-width ledger row layout.

Column A holds the date key, followed by five columns per team and nine
summary columns. The layout is the single source of truth for column
positions: the wizard, the row resolver and confirmed mutations all look
columns up here.
"""

from typing import Any

from cierrebot.graph.state import ClosingSession, ClosingTotals
from cierrebot.services.ledger import column_letter

TEAM_FIELDS = [
    ("sale", "Venta"),
    ("deposits", "Depósitos"),
    ("withdrawals", "Retiros"),
    ("commission", "Comisión"),
    ("net", "Neto"),
]

SUMMARY_FIELDS = [
    ("loans_requested", "Préstamos pedidos"),
    ("loans_returned", "Préstamos devueltos"),
    ("expenses", "Gastos"),
    ("total_net", "Neto total"),
    ("carry_over", "Arrastre"),
    ("total_due", "Total a rendir"),
    ("amount_settled", "Rendido"),
    ("shortfall", "Diferencia"),
    ("notes", "Observaciones"),
]


def team_key(name: str) -> str:
    return "_".join(name.strip().lower().split())


class LedgerLayout:
    def __init__(self, team_names: list[str]) -> None:
        self.team_names = list(team_names)
        self._fields: list[str] = ["date"]
        self._labels: list[str] = ["Fecha"]
        for name in self.team_names:
            for field, label in TEAM_FIELDS:
                self._fields.append(f"{team_key(name)}.{field}")
                self._labels.append(f"{name} {label}")
        for field, label in SUMMARY_FIELDS:
            self._fields.append(field)
            self._labels.append(label)
        self._index = {field: i for i, field in enumerate(self._fields)}

    @property
    def width(self) -> int:
        return len(self._fields)

    @property
    def last_column(self) -> str:
        return column_letter(self.width - 1)

    def headers(self) -> list[str]:
        return list(self._labels)

    def index_of(self, field: str) -> int:
        try:
            return self._index[field]
        except KeyError:
            raise ValueError(f"Unknown ledger field {field!r}") from None

    def column_for(self, field: str) -> str:
        return column_letter(self.index_of(field))

    def label_for(self, field: str) -> str:
        return self._labels[self.index_of(field)]

    def resolve_field(self, field: str, team: str | None = None) -> str | None:
        """Map an extracted (field, team) pair to a layout key, or None if it has no column."""
        field = (field or "").strip().lower()
        if team:
            wanted = team_key(team)
            for name in self.team_names:
                key = team_key(name)
                if key == wanted or key.replace("_", "") == wanted.replace("_", ""):
                    candidate = f"{key}.{field}"
                    return candidate if candidate in self._index else None
            return None
        return field if field in self._index else None


def build_row(layout: LedgerLayout, closing: ClosingSession, totals: ClosingTotals) -> list[Any]:
    """Ordered field vector for one settlement; always exactly layout.width values."""
    row: list[Any] = [""] * layout.width
    row[layout.index_of("date")] = closing.date_key or ""

    for name in layout.team_names:
        record = closing.teams.get(name)
        if record is None:
            continue
        for field, _ in TEAM_FIELDS:
            row[layout.index_of(f"{team_key(name)}.{field}")] = record[field]

    summary = {
        "loans_requested": closing.loans_requested,
        "loans_returned": closing.loans_returned,
        "expenses": closing.expenses,
        "total_net": totals["total_net"],
        "carry_over": totals["carry_over"],
        "total_due": totals["total_due"],
        "amount_settled": closing.amount_settled,
        "shortfall": totals["shortfall"],
        "notes": closing.notes,
    }
    for field, value in summary.items():
        row[layout.index_of(field)] = value
    return row
