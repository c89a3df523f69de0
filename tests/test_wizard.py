"""
Tests for the closing wizard
"""
import asyncio

import pytest

from cierrebot.config import Settings
from cierrebot.graph.state import WizardStep
from cierrebot.services.ledger_rows import LedgerLayout
from cierrebot.services.row_resolver import DateKeyedRowResolver
from cierrebot.services.wizard import NO_NOTES, InvalidTransition, SessionStore
from conftest import CLOSING_INPUTS, SHEET


async def run(sessions, cid, inputs):
    reply = None
    for text in inputs:
        reply = await sessions.advance(cid, text)
    return reply


def sessions_with(ledger, **overrides) -> SessionStore:
    settings = Settings(ledger_sheet=SHEET, **overrides)
    layout = LedgerLayout(settings.team_names)
    resolver = DateKeyedRowResolver(ledger, layout, SHEET, settings.ledger_first_row)
    return SessionStore(settings, ledger, resolver, layout)


@pytest.mark.asyncio
async def test_full_closing_writes_one_row(sessions, ledger, layout):
    sessions.start("c1")
    reply = await run(sessions, "c1", CLOSING_INPUTS)

    assert reply.done
    assert reply.row_index == 3
    assert reply.totals["total_net"] == 4_350_000
    assert reply.totals["carry_over"] == 0
    assert reply.totals["total_due"] == 4_350_000
    assert reply.totals["shortfall"] == -15_650_000
    assert reply.text.startswith("Cierre 01/02/2026 guardado (fila 3).")
    assert "Se rindió $15.650.000 más de lo que correspondía." in reply.totals["alerts"]
    assert "Préstamo pendiente: $6.000.000." in reply.totals["alerts"]

    assert ledger.row_writes == [3]
    assert ledger.cell(SHEET, "A3") == "01/02/2026"
    assert ledger.cell(SHEET, f"{layout.column_for('publi_1.sale')}3") == 1_000_000
    assert ledger.cell(SHEET, f"{layout.column_for('publi_3.commission')}3") == 100_000
    assert ledger.cell(SHEET, f"{layout.column_for('publi_5.net')}3") == 900_000
    assert ledger.cell(SHEET, f"{layout.column_for('shortfall')}3") == -15_650_000
    assert ledger.cell(SHEET, f"{layout.column_for('notes')}3") == "sin obs"
    assert not sessions.is_active("c1")


@pytest.mark.asyncio
async def test_closing_without_expenses(ledger):
    sessions = sessions_with(ledger, include_expenses=False)
    inputs = [text for text in CLOSING_INPUTS if text != "150000"]
    sessions.start("c1")
    reply = await run(sessions, "c1", inputs)

    assert reply.done
    assert reply.totals["total_net"] == 4_500_000
    assert reply.totals["shortfall"] == -15_500_000
    assert "Gastos" not in reply.text


@pytest.mark.asyncio
async def test_invalid_input_reprompts_without_moving(sessions):
    sessions.start("c1")
    reply = await sessions.advance("c1", "mañana")
    assert reply.text.startswith("No entendí la fecha.")
    assert sessions.get("c1").step is WizardStep.DATE

    await sessions.advance("c1", "01/02/2026")
    for bad in ("5000", "5000 -10", "1 2 3 4", "5000 9999999999999"):
        reply = await sessions.advance("c1", bad)
        assert not reply.done
        assert sessions.get("c1").step is WizardStep.TEAM
        assert sessions.get("c1").team_index == 0
    assert sessions.get("c1").teams == {}


@pytest.mark.asyncio
async def test_relative_dates(sessions):
    sessions.start("c1")
    reply = await sessions.advance("c1", "Hoy")
    assert sessions.get("c1").date_key is not None
    assert reply.text.startswith(f"Fecha: {sessions.get('c1').date_key}.")


@pytest.mark.asyncio
async def test_team_name_is_not_read_as_amount(sessions):
    sessions.start("c1")
    await sessions.advance("c1", "01/02/2026")
    await sessions.advance("c1", "Publi 1: 5000000 4000000")
    record = sessions.get("c1").teams["Publi 1"]
    assert record["deposits"] == 5_000_000
    assert record["withdrawals"] == 4_000_000


@pytest.mark.asyncio
async def test_three_amounts_and_blend_formula(ledger):
    sessions = sessions_with(ledger, net_formula="blend")
    sessions.start("c1")
    await sessions.advance("c1", "01/02/2026")
    await sessions.advance("c1", "1000000 5000000 4000000")

    record = sessions.get("c1").teams["Publi 1"]
    assert record["sale"] == 1_000_000
    assert record["commission"] == 100_000
    assert record["net"] == 1_900_000


@pytest.mark.asyncio
async def test_carry_over_from_previous_closing(sessions):
    first = CLOSING_INPUTS[:-2] + ["4000000", "no"]
    sessions.start("c1")
    reply = await run(sessions, "c1", first)
    assert reply.totals["shortfall"] == 350_000
    assert "Falta rendir $350.000." in reply.totals["alerts"]

    second = ["02/02/2026"] + CLOSING_INPUTS[1:]
    sessions.start("c1")
    reply = await run(sessions, "c1", second)
    assert reply.row_index == 4
    assert reply.totals["carry_over"] == 350_000
    assert reply.totals["total_due"] == 4_700_000


@pytest.mark.asyncio
async def test_rerun_for_same_date_overwrites_row(sessions, ledger, layout):
    sessions.start("c1")
    await run(sessions, "c1", CLOSING_INPUTS[:-1] + ["no"])
    assert ledger.cell(SHEET, f"{layout.column_for('notes')}3") == NO_NOTES

    sessions.start("c1")
    reply = await run(sessions, "c1", CLOSING_INPUTS)
    assert reply.row_index == 3
    assert ledger.row_writes == [3, 3]
    assert ledger.cell(SHEET, f"{layout.column_for('notes')}3") == "sin obs"
    assert await ledger.read_range(SHEET, "A4:A") == []


@pytest.mark.asyncio
async def test_failed_write_keeps_session_for_retry(sessions, ledger):
    sessions.start("c1")
    await run(sessions, "c1", CLOSING_INPUTS[:-1])

    ledger.fail_rows = True
    reply = await sessions.advance("c1", "sin obs")
    assert not reply.done
    assert "No pude guardar el cierre" in reply.text
    session = sessions.get("c1")
    assert session.step is WizardStep.NOTES
    assert not session.persisting
    assert session.notes == ""

    ledger.fail_rows = False
    reply = await sessions.advance("c1", "sin obs")
    assert reply.done
    assert ledger.row_writes == [3]


@pytest.mark.asyncio
async def test_persisting_session_cannot_be_cancelled_or_advanced(sessions, ledger):
    sessions.start("c1")
    await run(sessions, "c1", CLOSING_INPUTS[:-1])

    ledger.row_gate = asyncio.Event()
    task = asyncio.create_task(sessions.advance("c1", "sin obs"))
    for _ in range(10):
        await asyncio.sleep(0)
        if sessions.get("c1").persisting:
            break
    assert sessions.get("c1").persisting

    assert sessions.cancel("c1") is False
    busy = await sessions.advance("c1", "otra cosa")
    assert busy.text.startswith("Todavía estoy guardando")

    ledger.row_gate.set()
    reply = await task
    assert reply.done
    assert ledger.row_writes == [3]
    assert not sessions.is_active("c1")


@pytest.mark.asyncio
async def test_cancel_discards_everything(sessions, ledger):
    sessions.start("c1")
    await run(sessions, "c1", CLOSING_INPUTS[:4])
    assert sessions.cancel("c1") is True
    assert not sessions.is_active("c1")
    assert sessions.cancel("c1") is False
    assert ledger.row_writes == []

    reply = await sessions.advance("c1", "01/02/2026")
    assert reply.text.startswith("No hay ningún cierre en curso")


@pytest.mark.asyncio
async def test_start_twice_keeps_current_session(sessions):
    sessions.start("c1")
    await sessions.advance("c1", "01/02/2026")
    reply = sessions.start("c1")
    assert reply.startswith("Ya hay un cierre en curso.")
    assert sessions.get("c1").step is WizardStep.TEAM


@pytest.mark.asyncio
async def test_unknown_step_raises(sessions):
    sessions.start("c1")
    sessions.get("c1").step = WizardStep.PERSISTED
    with pytest.raises(InvalidTransition):
        await sessions.advance("c1", "hola")


@pytest.mark.asyncio
async def test_negative_team_alerts(sessions):
    sessions.start("c1")
    inputs = ["01/02/2026", "1000 5000", "0 0", "0 0", "0 0", "0 0", "0 0", "0", "0", "no"]
    reply = await run(sessions, "c1", inputs)

    assert reply.done
    assert reply.totals["total_net"] == -4_020
    alerts = reply.totals["alerts"]
    assert "Neto total negativo, revisar saldos de los equipos." in alerts
    assert any(alert.startswith("El equipo Publi 1 tiene el neto más negativo") for alert in alerts)
    assert not any(alert.startswith("Préstamo pendiente") for alert in alerts)


def test_current_prompt_follows_step(sessions):
    assert sessions.current_prompt("c1") is None
    sessions.start("c1")
    assert sessions.current_prompt("c1") == "¿De qué fecha es el cierre? (dd/mm/aaaa)"
    sessions.get("c1").step = WizardStep.TEAM
    sessions.get("c1").team_index = 2
    assert sessions.current_prompt("c1").startswith("Publi 3:")


@pytest.mark.asyncio
async def test_amounts_for_another_team_are_refused(sessions):
    sessions.start("c1")
    await sessions.advance("c1", "01/02/2026")

    reply = await sessions.advance("c1", "Publi 2: 5000000 4000000")

    assert not reply.done
    assert reply.text.startswith("Ahora van los montos de Publi 1, no de Publi 2.")
    assert sessions.get("c1").team_index == 0
    assert sessions.get("c1").teams == {}


@pytest.mark.asyncio
async def test_team_name_match_is_whole_name(ledger):
    names = ["Publi 1", "Publi 10"]
    sessions = sessions_with(ledger, team_names=names)
    sessions.start("c1")
    await sessions.advance("c1", "01/02/2026")
    await sessions.advance("c1", "Publi 1: 5000000 4000000")

    reply = await sessions.advance("c1", "Publi 10: 300 100")

    assert sessions.get("c1").teams["Publi 10"]["deposits"] == 300
    assert reply.text.startswith("Publi 10: venta 200")
