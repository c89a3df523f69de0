"""
Ledger store.

The ledger is a set of named sheets addressed with A1 notation ("B12",
"A3:AI", "A3:AI3"). Reads follow the spreadsheet API convention: a matrix
of rows, trailing blank cells and trailing blank rows omitted, interior blank
rows returned as empty lists.

No transactional semantics are offered across calls. Callers that resolve a
row and then write to it must serialize those calls themselves.
"""

import logging
import re
from typing import Any

from sqlalchemy import and_, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cierrebot.database import LedgerCell

logger = logging.getLogger(__name__)

_CELL_REF = re.compile(r"^([A-Za-z]+)(\d+)?$")


class LedgerError(Exception):
    """Raised when the ledger backend fails or a reference is malformed."""


# ---------------------------------------------------------------------------
# A1 helpers
# ---------------------------------------------------------------------------

def column_letter(index: int) -> str:
    """0 -> "A", 25 -> "Z", 26 -> "AA"."""
    if index < 0:
        raise LedgerError(f"Invalid column index {index}")
    letters = ""
    index += 1
    while index:
        index, rem = divmod(index - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return letters


def column_index(letters: str) -> int:
    """"A" -> 0, "AA" -> 26."""
    index = 0
    for ch in letters.upper():
        index = index * 26 + (ord(ch) - ord("A") + 1)
    return index - 1


def _parse_ref(ref: str) -> tuple[int, int | None]:
    match = _CELL_REF.match(ref.strip())
    if not match:
        raise LedgerError(f"Invalid cell reference {ref!r}")
    row = int(match.group(2)) if match.group(2) else None
    return column_index(match.group(1)), row


def parse_cell_ref(ref: str) -> tuple[int, int]:
    """"B12" -> (row=12, col=1)."""
    col, row = _parse_ref(ref)
    if row is None or row < 1:
        raise LedgerError(f"Cell reference {ref!r} has no row")
    return row, col


def parse_range(spec: str) -> tuple[int, int, int | None, int]:
    """
    "A3:AI"   -> (3, 0, None, 34)   open-ended rows
    "A3:AI3"  -> (3, 0, 3, 34)
    "C5"      -> (5, 2, 5, 2)
    """
    start, _, end = spec.partition(":")
    start_col, start_row = _parse_ref(start)
    if end:
        end_col, end_row = _parse_ref(end)
    else:
        end_col, end_row = start_col, start_row
    if end_col < start_col:
        raise LedgerError(f"Invalid range {spec!r}")
    return start_row or 1, start_col, end_row, end_col


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def to_matrix(
    cells: dict[tuple[int, int], Any],
    start_row: int,
    start_col: int,
    end_row: int | None,
    end_col: int,
) -> list[list[Any]]:
    """Shape sparse {(row, col): value} cells into a trimmed value matrix."""
    in_range = {
        (r, c): v
        for (r, c), v in cells.items()
        if r >= start_row
        and (end_row is None or r <= end_row)
        and start_col <= c <= end_col
        and not _is_blank(v)
    }
    if not in_range:
        return []
    last_row = max(r for r, _ in in_range)
    matrix: list[list[Any]] = []
    for r in range(start_row, last_row + 1):
        cols = [c for (row, c) in in_range if row == r]
        if not cols:
            matrix.append([])
            continue
        width = max(cols) - start_col + 1
        matrix.append([in_range.get((r, start_col + i), "") for i in range(width)])
    return matrix


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class LedgerStore:
    """Interface every ledger backend implements."""

    async def read_range(self, sheet: str, range_spec: str) -> list[list[Any]]:
        raise NotImplementedError

    async def write_cell(self, sheet: str, cell_ref: str, value: Any) -> None:
        raise NotImplementedError

    async def clear_cell(self, sheet: str, cell_ref: str) -> None:
        raise NotImplementedError

    async def write_row(self, sheet: str, row_index: int, values: list[Any]) -> None:
        raise NotImplementedError


class InMemoryLedgerStore(LedgerStore):
    """Volatile ledger used for local runs and tests."""

    def __init__(self) -> None:
        self._sheets: dict[str, dict[tuple[int, int], Any]] = {}

    def _sheet(self, sheet: str) -> dict[tuple[int, int], Any]:
        return self._sheets.setdefault(sheet, {})

    async def read_range(self, sheet: str, range_spec: str) -> list[list[Any]]:
        start_row, start_col, end_row, end_col = parse_range(range_spec)
        return to_matrix(self._sheet(sheet), start_row, start_col, end_row, end_col)

    async def write_cell(self, sheet: str, cell_ref: str, value: Any) -> None:
        row, col = parse_cell_ref(cell_ref)
        self._sheet(sheet)[(row, col)] = value

    async def clear_cell(self, sheet: str, cell_ref: str) -> None:
        row, col = parse_cell_ref(cell_ref)
        self._sheet(sheet).pop((row, col), None)

    async def write_row(self, sheet: str, row_index: int, values: list[Any]) -> None:
        cells = self._sheet(sheet)
        for col, value in enumerate(values):
            if value is None:
                cells.pop((row_index, col), None)
            else:
                cells[(row_index, col)] = value

    def cell(self, sheet: str, cell_ref: str) -> Any:
        row, col = parse_cell_ref(cell_ref)
        return self._sheet(sheet).get((row, col))


class SqlLedgerStore(LedgerStore):
    """Ledger persisted as one LedgerCell row per non-blank cell."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def read_range(self, sheet: str, range_spec: str) -> list[list[Any]]:
        start_row, start_col, end_row, end_col = parse_range(range_spec)
        conditions = [
            LedgerCell.sheet == sheet,
            LedgerCell.row >= start_row,
            LedgerCell.col >= start_col,
            LedgerCell.col <= end_col,
        ]
        if end_row is not None:
            conditions.append(LedgerCell.row <= end_row)
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(LedgerCell).where(and_(*conditions)))
                cells = {(c.row, c.col): c.value for c in result.scalars().all()}
        except SQLAlchemyError as exc:
            raise LedgerError(f"read {sheet}!{range_spec} failed") from exc
        return to_matrix(cells, start_row, start_col, end_row, end_col)

    async def _upsert(self, session: AsyncSession, sheet: str, row: int, col: int, value: Any) -> None:
        result = await session.execute(
            select(LedgerCell).where(
                LedgerCell.sheet == sheet, LedgerCell.row == row, LedgerCell.col == col
            )
        )
        cell = result.scalar_one_or_none()
        if value is None:
            if cell:
                await session.delete(cell)
            return
        if cell:
            cell.value = value
        else:
            session.add(LedgerCell(sheet=sheet, row=row, col=col, value=value))

    async def write_cell(self, sheet: str, cell_ref: str, value: Any) -> None:
        row, col = parse_cell_ref(cell_ref)
        try:
            async with self._session_factory() as session:
                await self._upsert(session, sheet, row, col, value)
                await session.commit()
        except SQLAlchemyError as exc:
            raise LedgerError(f"write {sheet}!{cell_ref} failed") from exc
        logger.info("Ledger write %s!%s", sheet, cell_ref)

    async def clear_cell(self, sheet: str, cell_ref: str) -> None:
        row, col = parse_cell_ref(cell_ref)
        try:
            async with self._session_factory() as session:
                await session.execute(
                    delete(LedgerCell).where(
                        LedgerCell.sheet == sheet, LedgerCell.row == row, LedgerCell.col == col
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise LedgerError(f"clear {sheet}!{cell_ref} failed") from exc
        logger.info("Ledger clear %s!%s", sheet, cell_ref)

    async def write_row(self, sheet: str, row_index: int, values: list[Any]) -> None:
        try:
            async with self._session_factory() as session:
                for col, value in enumerate(values):
                    await self._upsert(session, sheet, row_index, col, value)
                await session.commit()
        except SQLAlchemyError as exc:
            raise LedgerError(f"write row {sheet}!{row_index} failed") from exc
        logger.info("Ledger row %s!%d written (%d cells)", sheet, row_index, len(values))
