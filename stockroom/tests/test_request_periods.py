"""
Tests for the monthly request windows.
"""
from datetime import date
from types import SimpleNamespace

import pytest

from stockroom.core.errors import ValidationError
from stockroom.db.models import RequestPeriod
from stockroom.services.request_periods import (
    PERIOD_GENERAL, PERIOD_TECHNICAL, ensure_period_open, is_period_open,
    period_key_for_department, upsert_period,
)


class TestPeriodKeys:

    @pytest.mark.parametrize("department,key", [
        ("technical", PERIOD_TECHNICAL),
        ("Área Técnica", PERIOD_TECHNICAL),
        ("area_tecnica", PERIOD_TECHNICAL),
        ("laboratory", PERIOD_GENERAL),
        (None, PERIOD_GENERAL),
    ])
    def test_department_maps_to_window(self, department, key):
        assert period_key_for_department(department) == key


class TestIsPeriodOpen:

    def test_bounds_are_inclusive(self):
        period = SimpleNamespace(start_day=5, end_day=15)
        assert is_period_open(period, date(2026, 10, 5))
        assert is_period_open(period, date(2026, 10, 15))
        assert not is_period_open(period, date(2026, 10, 4))
        assert not is_period_open(period, date(2026, 10, 16))

    def test_missing_configuration_is_open(self):
        assert is_period_open(None, date(2026, 10, 31))


class TestUpsertPeriod:

    def test_creates_then_updates(self, db):
        upsert_period(db, PERIOD_TECHNICAL, 1, 10, "Ada Admin")
        period = upsert_period(db, PERIOD_TECHNICAL, 5, 20, "Olga Operator")

        assert db.query(RequestPeriod).count() == 1
        assert (period.start_day, period.end_day, period.updated_by) == (5, 20, "Olga Operator")

    @pytest.mark.parametrize("key,start,end", [
        ("warehouse", 1, 10),
        (PERIOD_GENERAL, 0, 10),
        (PERIOD_GENERAL, 1, 32),
        (PERIOD_GENERAL, 20, 10),
    ])
    def test_rejects_invalid_windows(self, db, key, start, end):
        with pytest.raises(ValidationError):
            upsert_period(db, key, start, end, "Ada Admin")

    def test_technical_window_applies_to_technical_departments_only(self, db):
        upsert_period(db, PERIOD_TECHNICAL, 1, 5, "Ada Admin")

        with pytest.raises(ValidationError):
            ensure_period_open(db, "technical", date(2026, 10, 19))
        ensure_period_open(db, "laboratory", date(2026, 10, 19))
