"""
Date-keyed row resolution over the append-only settlement ledger.

find_row() and next_row() are plain reads. next_row() for a date that does
not exist yet returns one past the last non-blank row, so two callers that
resolve the same new date before either writes get the same index. Callers
must serialize resolve-then-write per date key; the router does this per
conversation, nothing does it across conversations.
"""

import logging
from typing import Any

from cierrebot.services.dates import key_to_date, normalize_date_key
from cierrebot.services.ledger import LedgerStore
from cierrebot.services.ledger_rows import LedgerLayout
from cierrebot.services.numbers import parse_amount

logger = logging.getLogger(__name__)


def _as_amount(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    parsed = parse_amount(value)
    return parsed if parsed is not None else 0.0


class DateKeyedRowResolver:
    def __init__(self, store: LedgerStore, layout: LedgerLayout, sheet: str, first_row: int = 3) -> None:
        self.store = store
        self.layout = layout
        self.sheet = sheet
        self.first_row = first_row

    async def _rows(self) -> list[list[Any]]:
        return await self.store.read_range(
            self.sheet, f"A{self.first_row}:{self.layout.last_column}"
        )

    def _dated(self, rows: list[list[Any]]):
        """Yield (row_index, date_key, values) for every row with a parseable date."""
        for offset, values in enumerate(rows):
            key = normalize_date_key(values[0]) if values else None
            if key:
                yield self.first_row + offset, key, values

    async def ensure_headers(self) -> None:
        """Write the header row just above the first data row if it is blank."""
        header_row = self.first_row - 1
        if header_row < 1:
            return
        existing = await self.store.read_range(
            self.sheet, f"A{header_row}:{self.layout.last_column}{header_row}"
        )
        if existing:
            return
        await self.store.write_row(self.sheet, header_row, self.layout.headers())
        logger.info("Ledger headers written to %s!%d", self.sheet, header_row)

    async def find_row(self, key: str) -> int | None:
        canonical = normalize_date_key(key)
        if canonical is None:
            logger.warning("find_row: %r is not a date", key)
            return None
        for row_index, row_key, _ in self._dated(await self._rows()):
            if row_key == canonical:
                return row_index
        return None

    async def next_row(self, key: str) -> int:
        """Existing row for key, else the first row after the last non-blank one."""
        canonical = normalize_date_key(key)
        rows = await self._rows()
        if canonical:
            for row_index, row_key, _ in self._dated(rows):
                if row_key == canonical:
                    return row_index
        return self.first_row + len(rows)

    async def read_row(self, key: str) -> list[Any] | None:
        canonical = normalize_date_key(key)
        if canonical:
            for _, row_key, values in self._dated(await self._rows()):
                if row_key == canonical:
                    return list(values) + [""] * (self.layout.width - len(values))
        logger.warning("No ledger row for date %r", key)
        return None

    async def latest_key(self) -> str | None:
        keys = [row_key for _, row_key, _ in self._dated(await self._rows())]
        if not keys:
            return None
        return max(keys, key=key_to_date)

    async def previous_pending(self, key: str) -> float:
        """Shortfall recorded by the most recent settlement strictly before key (0 if none)."""
        canonical = normalize_date_key(key)
        if canonical is None:
            return 0.0
        current = key_to_date(canonical)
        shortfall_at = self.layout.index_of("shortfall")

        best = None
        for _, row_key, values in self._dated(await self._rows()):
            row_date = key_to_date(row_key)
            if row_date < current and (best is None or row_date > best[0]):
                best = (row_date, values)
        if best is None:
            return 0.0
        values = best[1]
        return _as_amount(values[shortfall_at]) if shortfall_at < len(values) else 0.0
