"""
Test suite for the analytics projection
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_engine.storage import InMemoryStorage
from loan_engine.audit import AuditTrail
from loan_engine.exceptions import NotFound
from loan_engine.ledger import LoanLedger
from loan_engine.money import round_money
from loan_engine.replay import BalanceReplayService
from loan_engine.analytics import (
    AnalyticsService, PointSource, calendar_months, normalize_period, project
)


ORIGIN = date(2024, 1, 15)


@pytest.fixture
def ledger():
    storage = InMemoryStorage()
    return LoanLedger(storage, AuditTrail(storage))


@pytest.fixture
def replay_service(ledger):
    return BalanceReplayService(ledger.storage, ledger, ledger.audit_trail)


@pytest.fixture
def analytics(ledger, replay_service):
    return AnalyticsService(ledger, replay_service)


@pytest.fixture
def account(ledger, replay_service):
    account = ledger.open_account("user-1", "30000", "0.01", origin_date=ORIGIN)
    replay_service.replay_and_persist(account.id, as_of=date(2024, 4, 15))
    return ledger.get_account(account.id)


class TestNormalizePeriod:

    @pytest.mark.parametrize("value,expected", [
        (6, 6), (12, 12), (24, 24), ("6", 6), (" 12 ", 12),
        ("invalid", 24), (-1, 24), ("-1", 24), (0, 24), (36, 24), (None, 24),
        (True, 24), (12.0, 24), ("", 24),
    ])
    def test_values(self, value, expected):
        assert normalize_period(value) == expected

    def test_custom_default(self):
        assert normalize_period("bogus", default=12) == 12


class TestCalendarMonths:

    def test_window_ends_with_as_of_month(self):
        assert calendar_months(date(2024, 2, 10), 6) == [
            "2023-09", "2023-10", "2023-11", "2023-12", "2024-01", "2024-02"
        ]


class TestProject:
    """Test the pure projection"""

    def test_actual_then_projected(self, account, replay_service):
        rows = replay_service.get_monthly_balances(account.id)
        view = project(account, rows, 6, date(2024, 6, 10))

        assert len(view.points) == 6
        assert [p.source for p in view.points] == [PointSource.ACTUAL] * 3 + [PointSource.PROJECTED] * 3
        assert [p.balance for p in view.points[3:]] == [
            Decimal('31218.12'), Decimal('31530.30'), Decimal('31845.60')
        ]
        assert view.points[3].monthly_payment == Decimal('309.09')

    def test_months_before_origin_carry_principal(self, account, replay_service):
        rows = replay_service.get_monthly_balances(account.id)
        view = project(account, rows, 12, date(2024, 6, 10))

        opening = [p for p in view.points if p.source == PointSource.OPENING]
        assert [p.month for p in opening] == [f"2023-{m:02d}" for m in range(7, 13)]
        assert all(p.balance == Decimal('30000.00') for p in opening)

    def test_aggregates_come_from_account(self, account, replay_service):
        rows = replay_service.get_monthly_balances(account.id)
        view = project(account, rows, 6, date(2024, 4, 15))

        assert view.current_balance == account.current_balance == Decimal('30909.03')
        assert view.total_principal == Decimal('30000.00')
        assert view.total_bonuses == Decimal('0')
        assert view.monthly_rate == Decimal('0.01')

    def test_without_replayed_rows(self, ledger):
        fresh = ledger.open_account("user-2", "1000", "0.01", origin_date=date(2024, 3, 1))
        view = project(fresh, [], 6, date(2024, 5, 20))

        assert [p.source for p in view.points] == (
            [PointSource.OPENING] * 4 + [PointSource.PROJECTED] * 2
        )
        assert [p.balance for p in view.points[-2:]] == [Decimal('1010.00'), Decimal('1020.10')]

    def test_window_after_last_row_compounds_the_gap(self, ledger, replay_service):
        small = ledger.open_account("user-3", "1000", "0.01", origin_date=ORIGIN)
        replay_service.replay_and_persist(small.id, as_of=date(2024, 4, 15))
        small = ledger.get_account(small.id)
        rows = replay_service.get_monthly_balances(small.id)
        assert rows[-1].month == "2024-03"
        assert rows[-1].balance == Decimal('1030.30')

        short = project(small, rows, 6, date(2025, 12, 1))
        long = project(small, rows, 24, date(2025, 12, 1))

        assert short.points == long.points[-6:]
        expected = rows[-1].balance
        for _ in range(16):
            expected += round_money(expected * Decimal('0.01'))
        assert short.points[0].month == "2025-07"
        assert short.points[0].balance == expected

    def test_never_replayed_account_compounds_from_origin(self, ledger):
        old = ledger.open_account("user-4", "1000", "0.01", origin_date=date(2020, 1, 1))

        short = project(old, [], 6, date(2026, 5, 1))
        long = project(old, [], 24, date(2026, 5, 1))

        assert short.points == long.points[-6:]
        # 2020-02 through 2025-12
        expected = Decimal('1000.00')
        for _ in range(71):
            expected += round_money(expected * Decimal('0.01'))
        assert short.points[0].month == "2025-12"
        assert short.points[0].balance == expected
        assert short.points[0].balance > Decimal('2000')

    def test_net_growth_non_negative(self, account, replay_service):
        rows = replay_service.get_monthly_balances(account.id)
        view = project(account, rows, 24, date(2024, 12, 1))
        assert all(p.net_growth >= 0 for p in view.points)


class TestAnalyticsService:

    def test_default_period_for_invalid_values(self, analytics, account):
        assert len(analytics.get_analytics(account.id, "invalid", as_of=date(2024, 4, 15)).points) == 24
        assert len(analytics.get_analytics(account.id, -1, as_of=date(2024, 4, 15)).points) == 24
        assert analytics.get_analytics(account.id, "12", as_of=date(2024, 4, 15)).period == 12

    def test_owner_check(self, analytics, account):
        assert analytics.get_analytics(account.id, 6, owner_id="user-1", as_of=date(2024, 4, 15))
        with pytest.raises(NotFound):
            analytics.get_analytics(account.id, 6, owner_id="someone-else")

    def test_missing_account(self, analytics):
        with pytest.raises(NotFound):
            analytics.get_analytics("missing", 6)
