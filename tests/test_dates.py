"""
Tests for canonical date keys
"""
import datetime

import pytest

from cierrebot.services.dates import extract_date_key, key_to_date, normalize_date_key


@pytest.mark.parametrize(
    "token",
    ["2026-02-01", "2026/2/1", "01/02/2026", "1/2/26", "01.02.2026", "01-02-2026", "01 02 2026", " 1/2/2026 "],
)
def test_normalize_accepts_common_shapes(token):
    assert normalize_date_key(token) == "01/02/2026"


@pytest.mark.parametrize("token", ["31/02/2026", "2026-13-01", "hola", "", None, "01/02-2026", "1/2"])
def test_normalize_rejects(token):
    assert normalize_date_key(token) is None


def test_normalize_date_objects():
    assert normalize_date_key(datetime.date(2026, 2, 1)) == "01/02/2026"
    assert normalize_date_key(datetime.datetime(2026, 2, 1, 18, 30)) == "01/02/2026"


def test_extract_from_free_text():
    assert extract_date_key("cierre del 1/2/2026, todo ok") == "01/02/2026"
    assert extract_date_key("fecha 2026-02-03 corregir gastos") == "03/02/2026"
    assert extract_date_key("montos 5000 4000") is None


def test_extract_skips_impossible_dates():
    assert extract_date_key("10 20 30 y luego 02/03/2026") == "02/03/2026"


def test_key_to_date():
    assert key_to_date("01/02/2026") == datetime.date(2026, 2, 1)
