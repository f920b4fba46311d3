# Overview: Pytest coverage for money arithmetic and calendar helpers.

from datetime import date, datetime

import pytest

from billing_core.errors import (
    InsufficientFundsError,
    InvariantViolationError,
    PrerequisiteNotMetError,
    ValidationError,
    error_payload,
)
from billing_core.money import Money, format_major, parse_major, require_cents
from billing_core.time_utils import (
    add_months,
    month_bounds,
    next_billing_date,
    previous_billing_date,
    previous_month_bounds,
)


class TestMoney:
    """Integer minor-unit arithmetic."""

    def test_rejects_floats_and_bools(self):
        with pytest.raises(ValidationError):
            Money(10.5)
        with pytest.raises(ValidationError):
            Money(True)

    def test_addition_requires_same_currency(self):
        assert (Money(150) + Money(250)).cents == 400
        with pytest.raises(ValidationError):
            Money(100, "EGP") + Money(100, "USD")

    def test_percent_floor_rounds_down(self):
        assert Money(99_900).percent_floor(15).cents == 14_985
        assert Money(1).percent_floor(50).cents == 0

    def test_floor_to_major_unit(self):
        assert Money(14_985).floor_to_major_unit().cents == 14_900
        assert Money(999, "JPY").floor_to_major_unit().cents == 999

    def test_prorate_floor(self):
        # 1000.00 difference, 15 of 31 days left
        assert Money(100_000).prorate_floor(15, 31).cents == 48_387
        with pytest.raises(ValidationError):
            Money(100).prorate_floor(1, 0)

    def test_major_units_truncates(self):
        assert Money(99_999).major_units == 999
        assert Money(-150).major_units == -1

    def test_format_and_parse(self):
        assert format_major(120_000, "EGP") == "1200.00 EGP"
        assert format_major(-5, "EGP") == "-0.05 EGP"
        assert parse_major("999.50", "EGP") == 99_950
        assert parse_major("7", "KWD") == 7_000
        with pytest.raises(ValidationError):
            parse_major("1.005", "EGP")
        with pytest.raises(ValidationError):
            parse_major("abc", "EGP")

    def test_require_cents(self):
        assert require_cents(5) == 5
        assert require_cents(0, positive=False) == 0
        for bad in (0, -1, 1.0, "10", False):
            with pytest.raises(ValidationError):
                require_cents(bad)


class TestCalendar:
    """Billing-date arithmetic with month-length clamping."""

    def test_billing_day_31_clamps_and_recovers(self):
        assert next_billing_date(31, date(2026, 1, 31)) == date(2026, 2, 28)
        assert next_billing_date(31, date(2026, 2, 28)) == date(2026, 3, 31)
        assert next_billing_date(31, date(2028, 1, 31)) == date(2028, 2, 29)

    def test_next_billing_date_is_strictly_after(self):
        assert next_billing_date(10, date(2026, 1, 10)) == date(2026, 2, 10)
        assert next_billing_date(10, date(2026, 1, 9)) == date(2026, 1, 10)
        assert next_billing_date(1, date(2026, 12, 15)) == date(2027, 1, 1)

    def test_next_billing_date_rejects_bad_day(self):
        with pytest.raises(ValueError):
            next_billing_date(0, date(2026, 1, 1))
        with pytest.raises(ValueError):
            next_billing_date(32, date(2026, 1, 1))

    def test_previous_billing_date(self):
        assert previous_billing_date(31, date(2026, 3, 31)) == date(2026, 2, 28)
        assert previous_billing_date(15, date(2026, 3, 20)) == date(2026, 3, 15)

    def test_add_months_keeps_anchor(self):
        jan31 = datetime(2026, 1, 31, 9, 0)
        feb = add_months(jan31, 1)
        assert feb == datetime(2026, 2, 28, 9, 0)
        assert add_months(feb, 1, anchor_day=31) == datetime(2026, 3, 31, 9, 0)
        assert add_months(datetime(2026, 12, 5), 1) == datetime(2027, 1, 5)

    def test_month_bounds_half_open(self):
        assert month_bounds(datetime(2026, 12, 31, 23, 59)) == (datetime(2026, 12, 1), datetime(2027, 1, 1))
        assert previous_month_bounds(datetime(2026, 1, 10)) == (datetime(2025, 12, 1), datetime(2026, 1, 1))


class TestErrorPayload:
    """Host-facing error rendering."""

    def test_insufficient_funds_carries_amounts(self):
        payload = error_payload(InsufficientFundsError(15_000, 2_500))
        assert payload["code"] == "INSUFFICIENT_FUNDS"
        assert payload["required_cents"] == 15_000
        assert payload["available_cents"] == 2_500
        assert "150.00 EGP" in payload["error"]

    def test_prerequisites_list_missing_apps(self):
        payload = error_payload(PrerequisiteNotMetError({"leads": ["crm"]}))
        assert payload["code"] == "PREREQUISITE_NOT_MET"
        assert payload["missing"] == {"leads": ["crm"]}

    def test_fatal_hides_detail(self):
        payload = error_payload(InvariantViolationError(7, 1_000, 900, "counters"))
        assert payload == {"error": "Billing is temporarily unavailable.", "code": "FATAL"}
