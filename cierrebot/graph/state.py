from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, TypedDict


class WizardStep(str, Enum):
    DATE = "date"
    TEAM = "team"  # repeated once per team, see ClosingSession.team_index
    LOANS = "loans"
    EXPENSES = "expenses"
    SETTLED = "settled"
    NOTES = "notes"
    PERSISTED = "persisted"


class TeamRecord(TypedDict):
    sale: float
    deposits: float
    withdrawals: float
    commission: int
    net: int


class ClosingTotals(TypedDict):
    total_net: int
    carry_over: float
    total_due: int
    shortfall: int
    alerts: list[str]


@dataclass
class ClosingSession:
    conversation_id: str
    step: WizardStep = WizardStep.DATE
    team_index: int = 0
    date_key: str | None = None
    # team name -> record, in wizard order
    teams: dict[str, TeamRecord] = field(default_factory=dict)
    loans_requested: float = 0.0
    loans_returned: float = 0.0
    expenses: float = 0.0
    amount_settled: float = 0.0
    notes: str = ""
    persisting: bool = False


class Intent(TypedDict):
    conversation_id: str
    text: str  # texts joined with "\n"
    texts: list[str]
    image_refs: list[str]


class Mutation(TypedDict, total=False):
    action: Literal["write", "clear"]
    sheet: str
    cell: str | None  # explicit A1 ref, or column + date_key
    column: str | None
    date_key: str | None
    value: Any
    provenance: str
