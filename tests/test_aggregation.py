from datetime import date
from decimal import Decimal
from typing import List

import pytest

from commission_engine import (
    BOOK_COLUMNS,
    CommissionEngine,
    CommissionValues,
    Customer,
    FamilyMember,
    FinancialDetails,
    InvalidBirthDateError,
    PeriodStats,
    Policy,
    PremiumScheduleItem,
    agreements_from_dict,
    round_money,
)


@pytest.fixture
def engine() -> CommissionEngine:
    agreements = {
        "Harel": {
            "health": CommissionValues(scope="20", ongoing="5"),
            "pension": CommissionValues(scope="1", ongoing="0.3", mobility="2"),
            "elementary": CommissionValues(is_active=True),
        },
        "Migdal": {"life": CommissionValues(scope="15", ongoing="4")},
    }
    return CommissionEngine(agreements, selected_carriers=["Harel", "Migdal", "Menora"])


@pytest.fixture
def customers() -> List[Customer]:
    dana = Customer(
        person_id="012345678",
        first_name="Dana",
        last_name="Levi",
        date_of_birth="1998-03-15",
        created_at=date(2025, 6, 1),
        policies=[
            Policy("P-1", "health", "Harel", monthly_cost=90,
                   premium_schedule=[PremiumScheduleItem(28, 120), PremiumScheduleItem(8, 55)]),
            Policy("P-2", "pension", "Harel",
                   details=FinancialDetails(accumulation=50000, mobility=10000, monthly_deposit=1000)),
            Policy("P-3", "life", "Migdal", monthly_cost=200, agent_appointment_only=True),
            Policy("P-4", "health", "Clal", monthly_cost=300),
            Policy("P-5", "health", "Harel", monthly_cost=50, status="inactive"),
        ],
        family_members=[
            FamilyMember(
                person_id="223344556",
                first_name="Noa",
                last_name="Levi",
                date_of_birth="2018-01-10",
                relationship="child",
                premium_shared_with_primary=True,
                policies=[Policy("P-7", "health", "Harel", monthly_cost=40)],
            ),
        ],
    )
    yossi = Customer(
        person_id="087654321",
        first_name="Yossi",
        last_name="Cohen",
        date_of_birth="1980-07-01",
        created_at="2026-03-10",
        policies=[Policy("P-6", "life", "Migdal", monthly_cost=100)],
    )
    return [dana, yossi]


def test_stats_for_period(engine: CommissionEngine, customers: List[Customer]) -> None:
    """Only active policies at selected carriers are counted, dependents included."""
    stats = engine.stats_for_period(customers[:1], 5, 2026)
    assert stats == PeriodStats(
        count=1,
        total_premium=Decimal("375"),
        total_scope=Decimal("740"),
        total_ongoing=Decimal("22.25"),
    )

    stats = engine.stats_for_period(customers, 5, 2026)
    assert stats.count == 2
    assert stats.total_premium == Decimal("475")
    assert stats.total_scope == Decimal("920")
    assert stats.total_ongoing == Decimal("26.25")


def test_stats_are_repeatable(engine: CommissionEngine, customers: List[Customer]) -> None:
    first = engine.stats_for_period(customers, 5, 2026)
    second = engine.stats_for_period(customers, 5, 2026)
    assert first == second


def test_empty_book(engine: CommissionEngine) -> None:
    assert engine.stats_for_period([], 0, 2026) == PeriodStats(count=0)


def test_invalid_birth_date_surfaces_from_aggregation(engine: CommissionEngine) -> None:
    customer = Customer(
        person_id="1",
        date_of_birth="",
        policies=[Policy("P-1", "health", "Harel", monthly_cost=90, premium_schedule=[PremiumScheduleItem(30, 100)])],
    )
    with pytest.raises(InvalidBirthDateError):
        engine.stats_for_period([customer], 0, 2026)


def test_monthly_series_follows_book_growth(engine: CommissionEngine, customers: List[Customer]) -> None:
    series = engine.monthly_series(customers, as_of=date(2026, 6, 20))

    assert len(series) == 12
    assert series[0].label == "7/25"
    assert series[-1].label == "6/26"
    assert (series[7].label, series[7].stats.count) == ("2/26", 1)
    assert (series[8].label, series[8].stats.count) == ("3/26", 2)
    assert series[-1].stats == engine.stats_for_period(customers, 5, 2026)


def test_monthly_series_window(engine: CommissionEngine, customers: List[Customer]) -> None:
    series = engine.monthly_series(customers, as_of=date(2026, 1, 5), window=3)
    assert [(p.year, p.month) for p in series] == [(2025, 10), (2025, 11), (2026, 0)]
    assert all(p.stats.count == 1 for p in series)


def test_breakdown_by_carrier(engine: CommissionEngine, customers: List[Customer]) -> None:
    shares = engine.breakdown_by_carrier(customers, 5, 2026)

    assert [s.carrier for s in shares] == ["Harel", "Migdal", "Menora"]
    assert shares[0].ongoing_amount == Decimal("14.25")
    assert shares[1].ongoing_amount == Decimal("12")
    assert shares[2].ongoing_amount == 0
    assert round_money(shares[0].percentage_of_total) == Decimal("54.29")
    assert round_money(shares[1].percentage_of_total) == Decimal("45.71")
    assert shares[2].percentage_of_total == 0


def test_breakdown_without_commission(engine: CommissionEngine) -> None:
    shares = engine.breakdown_by_carrier([], 0, 2026)
    assert len(shares) == 3
    assert all(s.percentage_of_total == 0 for s in shares)


def test_book_frame(engine: CommissionEngine, customers: List[Customer]) -> None:
    frame = engine.book_frame(customers, 5, 2026)
    assert list(frame.columns) == BOOK_COLUMNS
    assert sorted(frame["policy_id"]) == ["P-1", "P-2", "P-3", "P-6", "P-7"]
    child_row = frame[frame["policy_id"] == "P-7"].iloc[0]
    assert child_row["person_id"] == "223344556"
    assert child_row["premium"] == 55.0
    assert set(frame["rate_source"]) == {"agreement"}


def test_book_frame_flags_locked_policies(engine: CommissionEngine) -> None:
    customer = Customer(
        person_id="1",
        date_of_birth="1980-01-01",
        policies=[Policy("P-1", "health", "Harel", monthly_cost=100, fixed_commission_rate="3")],
    )
    frame = engine.book_frame([customer], 0, 2026)
    assert frame.loc[0, "rate_source"] == "locked"
    assert frame.loc[0, "ongoing"] == 3.0


def test_series_and_breakdown_frames(engine: CommissionEngine, customers: List[Customer]) -> None:
    series = engine.series_frame(customers, as_of=date(2026, 6, 20))
    assert len(series) == 12
    assert series.iloc[-1]["ongoing"] == 26.25

    breakdown = engine.breakdown_frame(customers, 5, 2026)
    assert list(breakdown["carrier"]) == ["Harel", "Migdal", "Menora"]
    assert breakdown["percentage"].sum() == pytest.approx(100.0)


def test_offers_product(engine: CommissionEngine) -> None:
    assert engine.offers_product("Harel", "elementary")
    assert not engine.offers_product("Migdal", "elementary")
    assert engine.offers_product("Harel", "health")
    assert not engine.offers_product("Menora", "health")


def test_print_summary(engine: CommissionEngine, customers: List[Customer], capsys) -> None:
    engine.print_summary(customers, 5, 2026)
    out = capsys.readouterr().out
    assert "AGENT COMMISSION SUMMARY - 06/2026" in out
    assert "Customers:       2" in out
    assert "Harel" in out


def test_records_from_application_json() -> None:
    """Customer and agreement records arrive in the application's camelCase shape."""
    record = {
        "id": "012345678",
        "firstName": "Dana",
        "lastName": "Levi",
        "dateOfBirth": "1998-03-15",
        "createdAt": "2025-06-01T10:00:00.000Z",
        "policies": [
            {
                "id": "a1", "type": "health", "company": "Harel", "monthlyCost": 90,
                "isAgentAppointmentOnly": False, "status": "active", "issueDate": "2025-06-01",
                "premiumSchedule": [{"age": 28, "premium": 120}],
                "details": {},
            },
            {
                "id": "a2", "type": "gemel", "company": "Harel", "monthlyCost": 0, "status": "active",
                "fixedCommissionRate": "0.25",
                "details": {
                    "accumulation": 24000, "monthlyDeposit": 500,
                    "investmentTracks": [{"trackName": "general", "weight": 100}],
                },
            },
        ],
        "familyMembers": [
            {
                "id": "223344556", "firstName": "Noa", "lastName": "Levi", "dateOfBirth": "2018-01-10",
                "relationship": "child", "isPremiumSharedWithPrimary": True,
                "policies": [{"id": "a3", "type": "health", "company": "Harel", "monthlyCost": 40, "details": {}}],
            },
        ],
    }
    customer = Customer.from_dict(record)
    agreements = agreements_from_dict({
        "Harel": {"health": {"scope": "20", "ongoing": "5"}, "gemel": {"scope": "1", "ongoing": "0.5"}},
    })
    engine = CommissionEngine(agreements, selected_carriers=["Harel"])

    assert customer.created_at == date(2025, 6, 1)
    assert customer.family_members[0].premium_shared_with_primary
    provident = customer.policies[1]
    assert provident.product_type == "provident_fund"
    assert provident.fixed_commission_rate == Decimal("0.25")
    assert provident.details.tracks[0].weight == Decimal("100")

    stats = engine.stats_for_period([customer], 5, 2026)
    # health 120 x 5% + provident (24000 x 0.25% / 12 + 500 x 0.25%) + child falls back to 40 x 5%
    assert stats.total_ongoing == Decimal("6") + Decimal("5") + Decimal("1.25") + Decimal("2")
    assert stats.total_premium == Decimal("160")


def test_print_summary_counts_locked_policies(engine: CommissionEngine, capsys) -> None:
    customer = Customer(
        person_id="1",
        date_of_birth="1980-01-01",
        policies=[
            Policy("P-1", "health", "Harel", monthly_cost=100, fixed_commission_rate="3"),
            Policy("P-2", "health", "Harel", monthly_cost=100),
            Policy("P-3", "health", "Harel", monthly_cost=100, fixed_commission_rate="3", status="inactive"),
        ],
    )
    engine.print_summary([customer], 0, 2026)
    assert "Locked Policies: 1" in capsys.readouterr().out


def test_series_counts_customer_without_creation_date(engine: CommissionEngine) -> None:
    customer = Customer(person_id="1", date_of_birth="1980-01-01",
                        policies=[Policy("P-1", "health", "Harel", monthly_cost=100)])
    series = engine.monthly_series([customer], as_of=date(2026, 6, 20), window=3)
    assert [p.stats.count for p in series] == [1, 1, 1]
