"""
Runtime configuration.

Values come from the environment (a local .env is loaded first). Invalid
values fail fast at startup with a RuntimeError naming the variable.
"""

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

_DEFAULT_TEAMS = ["Publi 1", "Publi 2", "Publi 3", "Publi 4", "Publi 5"]
_NET_FORMULAS = {"standard", "blend"}
_TRUTHY = {"1", "true", "yes", "on", "si"}


def _env_float(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from exc


def _env_int(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass
class Settings:
    telegram_token: str = ""
    telegram_webhook_secret: str | None = None
    ledger_database_url: str = "sqlite:///./ledger.db"
    ledger_sheet: str = "Cierres"
    ledger_first_row: int = 3
    team_names: list[str] = field(default_factory=lambda: list(_DEFAULT_TEAMS))
    commission_rate: float = 0.02
    net_formula: str = "standard"  # standard|blend
    include_expenses: bool = True
    batch_window_seconds: float = 5.0
    anthropic_model: str = "claude-sonnet-4-6"
    max_prompt_chars: int = 12000
    log_level: str = "INFO"

    @classmethod
    def load(cls) -> "Settings":
        load_dotenv()

        teams_raw = os.getenv("TEAM_NAMES", "")
        team_names = [t.strip() for t in teams_raw.split(",") if t.strip()] or list(_DEFAULT_TEAMS)
        if len({t.lower() for t in team_names}) != len(team_names):
            raise RuntimeError("TEAM_NAMES must not contain duplicates")

        net_formula = os.getenv("NET_FORMULA", "standard").strip().lower()
        if net_formula not in _NET_FORMULAS:
            raise RuntimeError(f"NET_FORMULA must be one of {sorted(_NET_FORMULAS)}")

        commission_rate = _env_float("COMMISSION_RATE", "0.02")
        if not 0 <= commission_rate < 1:
            raise RuntimeError("COMMISSION_RATE must be in [0, 1)")

        first_row = _env_int("LEDGER_FIRST_ROW", "3")
        if first_row < 1:
            raise RuntimeError("LEDGER_FIRST_ROW must be at least 1")

        window = _env_float("BATCH_WINDOW_SECONDS", "5")
        if window <= 0:
            raise RuntimeError("BATCH_WINDOW_SECONDS must be positive")

        return cls(
            telegram_token=os.getenv("TELEGRAM_TOKEN", ""),
            telegram_webhook_secret=os.getenv("TELEGRAM_WEBHOOK_SECRET") or None,
            ledger_database_url=os.getenv("LEDGER_DATABASE_URL", "sqlite:///./ledger.db"),
            ledger_sheet=os.getenv("LEDGER_SHEET", "Cierres"),
            ledger_first_row=first_row,
            team_names=team_names,
            commission_rate=commission_rate,
            net_formula=net_formula,
            include_expenses=os.getenv("INCLUDE_EXPENSES", "true").strip().lower() in _TRUTHY,
            batch_window_seconds=window,
            anthropic_model=os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-6"),
            max_prompt_chars=_env_int("MAX_PROMPT_CHARS", "12000"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
