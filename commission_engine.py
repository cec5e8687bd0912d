"""
InsurAgent Commission Engine v3.0
Commission & premium rules engine for an independent insurance agent's book.

Purpose: resolve age-rated premiums, compute scope (one-time) and ongoing
(recurring) commissions for premium-rated and accumulation-based products,
manage how a carrier rate change propagates to already-sold policies, and
roll the book up into period totals for reporting.

Usage:
    agreements = agreements_from_dict(profile["agreements"])
    customers = [Customer.from_dict(c) for c in records]

    engine = CommissionEngine(agreements, selected_carriers=profile["selectedCompanies"])
    stats = engine.stats_for_period(customers, month=0, year=2026)
    engine.print_summary(customers, month=0, year=2026)

    manager = RateChangeEffectivityManager(engine.agreements, engine.selected_carriers)
    manager.request_change("Harel", "health", "8")
    manager.confirm(customers, EffectivityMode.PROSPECTIVE)
"""

import logging
import math
import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import (
    Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Tuple, Union,
)

import pandas as pd

logger = logging.getLogger("CommissionEngine")

RawRate = Union[str, int, float, Decimal, None]
BirthDate = Union[date, datetime, str, None]

ZERO = Decimal("0")
HUNDRED = Decimal("100")
MONTHS_PER_YEAR = 12
CENT = Decimal("0.01")

# =============================================================================
# 1. CONFIGURATION: PRODUCT CATALOG
# =============================================================================

class ProductCategory(Enum):
    STANDARD = "standard"    # premium-rated: commission on the monthly premium
    FINANCIAL = "financial"  # accumulation-based: commission on balances and deposits


PRODUCT_CATEGORIES: Dict[str, ProductCategory] = {
    "health":                    ProductCategory.STANDARD,
    "life":                      ProductCategory.STANDARD,
    "critical_illness":          ProductCategory.STANDARD,
    "elementary":                ProductCategory.STANDARD,
    "abroad":                    ProductCategory.STANDARD,
    "pension":                   ProductCategory.FINANCIAL,
    "provident_fund":            ProductCategory.FINANCIAL,
    "study_fund":                ProductCategory.FINANCIAL,
    "investment_provident_fund": ProductCategory.FINANCIAL,
    "long_term_savings":         ProductCategory.FINANCIAL,
    "financial":                 ProductCategory.FINANCIAL,
}

# Names used by older client records
LEGACY_PRODUCT_TYPES: Dict[str, str] = {
    "gemel":        "provident_fund",
    "hishtalmut":   "study_fund",
    "gemel_invest": "investment_provident_fund",
}

# Only these products may be priced from an age-indexed premium table
SCHEDULED_TYPES: Tuple[str, ...] = ("health", "life", "critical_illness")

# Agreement for this product is a yes/no switch, not a set of percentages
SWITCH_ONLY_TYPES: Tuple[str, ...] = ("elementary",)

ACTIVE = "active"
INACTIVE = "inactive"
POLICY_STATUSES: Tuple[str, ...] = (ACTIVE, INACTIVE)

RELATIONSHIPS: Tuple[str, ...] = ("spouse", "child", "other")

# Rate-change selector meaning "every selected carrier"
GLOBAL = "GLOBAL"

DEFAULT_SERIES_WINDOW = 12

# =============================================================================
# 2. ERRORS
# =============================================================================

class CommissionEngineError(Exception):
    """Base class for errors raised by the commission engine."""


class InvalidBirthDateError(CommissionEngineError, ValueError):
    """An age was required but the birth date is missing or unparseable."""


class UnknownProductTypeError(CommissionEngineError, ValueError):
    pass


class PolicyValidationError(CommissionEngineError, ValueError):
    def __init__(self, problems: Sequence[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class NoPendingChangeError(CommissionEngineError):
    pass

# =============================================================================
# 3. VALUE PARSING
# =============================================================================

# Leading number of a free-text field ("0.5", "1.2%", " 3 ")
_NUMBER_PREFIX = re.compile(r"^\s*([-+]?(?:\d+\.?\d*|\.\d+))")


def parse_decimal(raw: Any) -> Optional[Decimal]:
    """Parse a rate or amount as entered; None when there is no number to read."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, Decimal):
        return raw if raw.is_finite() else None
    if isinstance(raw, int):
        return Decimal(raw)
    if isinstance(raw, float):
        if math.isnan(raw) or math.isinf(raw):
            return None
        return Decimal(str(raw))
    match = _NUMBER_PREFIX.match(str(raw))
    if not match:
        return None
    return Decimal(match.group(1))


def to_decimal(raw: Any, default: Decimal = ZERO) -> Decimal:
    value = parse_decimal(raw)
    return default if value is None else value


def round_money(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def normalize_product_type(product_type: str) -> str:
    key = str(product_type or "").strip().lower()
    return LEGACY_PRODUCT_TYPES.get(key, key)


def category_of(product_type: str) -> ProductCategory:
    try:
        return PRODUCT_CATEGORIES[product_type]
    except KeyError:
        raise UnknownProductTypeError(f"Unknown product type: '{product_type}'") from None


def _parse_optional_date(value: Any) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        parsed = pd.to_datetime(value)
    except (ValueError, TypeError):
        return None
    if pd.isna(parsed):
        return None
    return parsed.date()

# =============================================================================
# 4. DATA MODEL
# =============================================================================

@dataclass(frozen=True)
class PremiumScheduleItem:
    age: int
    premium: Decimal

    def __post_init__(self):
        object.__setattr__(self, "age", int(self.age))
        object.__setattr__(self, "premium", to_decimal(self.premium))
        if self.age < 0 or self.premium < 0:
            raise PolicyValidationError(
                [f"Schedule entry must have age >= 0 and premium >= 0 (got {self.age}, {self.premium})"]
            )


@dataclass(frozen=True)
class InvestmentTrack:
    name: str
    weight: Decimal  # percent of the balance allocated to this track

    def __post_init__(self):
        object.__setattr__(self, "weight", to_decimal(self.weight))


@dataclass(frozen=True)
class FinancialInputs:
    accumulation: Decimal = ZERO
    mobility: Decimal = ZERO
    monthly_deposit: Decimal = ZERO
    lump_sum_deposit: Decimal = ZERO

    def __post_init__(self):
        for name in ("accumulation", "mobility", "monthly_deposit", "lump_sum_deposit"):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))


@dataclass(frozen=True)
class FinancialDetails:
    """Balances and deposits carried by accumulation-based policies."""
    accumulation: Decimal = ZERO
    mobility: Decimal = ZERO          # funds transferred in from another institution
    monthly_deposit: Decimal = ZERO
    lump_sum_deposit: Decimal = ZERO
    tracks: Tuple[InvestmentTrack, ...] = ()
    established: Optional[date] = None

    def __post_init__(self):
        for name in ("accumulation", "mobility", "monthly_deposit", "lump_sum_deposit"):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))
        object.__setattr__(self, "tracks", tuple(self.tracks))

    def inputs(self) -> FinancialInputs:
        return FinancialInputs(
            accumulation=self.accumulation,
            mobility=self.mobility,
            monthly_deposit=self.monthly_deposit,
            lump_sum_deposit=self.lump_sum_deposit,
        )

    @property
    def has_amounts(self) -> bool:
        return any(
            amount > 0 for amount in
            (self.accumulation, self.mobility, self.monthly_deposit, self.lump_sum_deposit)
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FinancialDetails":
        tracks = tuple(
            InvestmentTrack(
                name=str(t.get("trackName", t.get("name", ""))),
                weight=to_decimal(t.get("weight")),
            )
            for t in data.get("investmentTracks") or []
        )
        return cls(
            accumulation=to_decimal(data.get("accumulation")),
            mobility=to_decimal(data.get("mobility")),
            monthly_deposit=to_decimal(data.get("monthlyDeposit", data.get("deposit"))),
            lump_sum_deposit=to_decimal(data.get("lumpSumDeposit")),
            tracks=tracks,
            established=_parse_optional_date(data.get("establishmentDate")),
        )


@dataclass(frozen=True)
class Policy:
    policy_id: str
    product_type: str
    carrier: str
    monthly_cost: Decimal = ZERO     # flat premium, also the fallback when a schedule misses
    premium_schedule: Tuple[PremiumScheduleItem, ...] = ()
    agent_appointment_only: bool = False
    status: str = ACTIVE
    details: FinancialDetails = field(default_factory=FinancialDetails)
    # Written only by RateChangeEffectivityManager
    fixed_commission_rate: Optional[Decimal] = None
    issue_date: Optional[date] = None

    def __post_init__(self):
        category_of(self.product_type)
        if self.status not in POLICY_STATUSES:
            raise PolicyValidationError([f"Unknown policy status: '{self.status}'"])
        object.__setattr__(self, "monthly_cost", to_decimal(self.monthly_cost))
        object.__setattr__(self, "premium_schedule", tuple(self.premium_schedule))
        if self.fixed_commission_rate is not None:
            object.__setattr__(self, "fixed_commission_rate", parse_decimal(self.fixed_commission_rate))

    @property
    def category(self) -> ProductCategory:
        return PRODUCT_CATEGORIES[self.product_type]

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE

    @property
    def is_locked(self) -> bool:
        return self.fixed_commission_rate is not None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Policy":
        schedule = tuple(
            PremiumScheduleItem(age=int(item["age"]), premium=to_decimal(item["premium"]))
            for item in data.get("premiumSchedule") or []
        )
        return cls(
            policy_id=str(data.get("id", "")).strip(),
            product_type=normalize_product_type(data.get("type", "")),
            carrier=str(data.get("company", "")).strip(),
            monthly_cost=to_decimal(data.get("monthlyCost")),
            premium_schedule=schedule,
            agent_appointment_only=bool(data.get("isAgentAppointmentOnly", False)),
            status=str(data.get("status", ACTIVE)).strip().lower(),
            details=FinancialDetails.from_dict(data.get("details") or {}),
            fixed_commission_rate=parse_decimal(data.get("fixedCommissionRate")),
            issue_date=_parse_optional_date(data.get("issueDate")),
        )


@dataclass
class Person:
    person_id: str
    first_name: str = ""
    last_name: str = ""
    date_of_birth: BirthDate = None


@dataclass
class FamilyMember(Person):
    relationship: str = "other"
    premium_shared_with_primary: bool = False  # minors priced from the primary's table
    policies: List[Policy] = field(default_factory=list)

    def __post_init__(self):
        if self.relationship not in RELATIONSHIPS:
            raise PolicyValidationError([f"Unknown relationship: '{self.relationship}'"])

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FamilyMember":
        return cls(
            person_id=str(data.get("id", "")).strip(),
            first_name=str(data.get("firstName", "")).strip(),
            last_name=str(data.get("lastName", "")).strip(),
            date_of_birth=data.get("dateOfBirth"),
            relationship=str(data.get("relationship") or "other").strip().lower(),
            premium_shared_with_primary=bool(data.get("isPremiumSharedWithPrimary", False)),
            policies=[Policy.from_dict(p) for p in data.get("policies") or []],
        )


@dataclass
class Customer(Person):
    policies: List[Policy] = field(default_factory=list)
    family_members: List[FamilyMember] = field(default_factory=list)
    created_at: Union[date, str, None] = None

    def people(self) -> List[Person]:
        return [self, *self.family_members]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Customer":
        return cls(
            person_id=str(data.get("id", "")).strip(),
            first_name=str(data.get("firstName", "")).strip(),
            last_name=str(data.get("lastName", "")).strip(),
            date_of_birth=data.get("dateOfBirth"),
            policies=[Policy.from_dict(p) for p in data.get("policies") or []],
            family_members=[FamilyMember.from_dict(m) for m in data.get("familyMembers") or []],
            created_at=_parse_optional_date(data.get("createdAt")),
        )


@dataclass(frozen=True)
class CommissionValues:
    """One carrier's agreement for one product type, values kept as entered."""
    scope: RawRate = None
    ongoing: RawRate = None
    mobility: RawRate = None
    is_active: Optional[bool] = None

    @property
    def scope_rate(self) -> Decimal:
        return to_decimal(self.scope)

    @property
    def ongoing_rate(self) -> Decimal:
        return to_decimal(self.ongoing)

    @property
    def mobility_rate(self) -> Decimal:
        return to_decimal(self.mobility)

    def merged_with(self, template: "CommissionValues") -> "CommissionValues":
        """Values set on the template win; unset ones keep this agreement's value."""
        return CommissionValues(
            scope=self.scope if template.scope is None else template.scope,
            ongoing=self.ongoing if template.ongoing is None else template.ongoing,
            mobility=self.mobility if template.mobility is None else template.mobility,
            is_active=self.is_active if template.is_active is None else template.is_active,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CommissionValues":
        is_active = data.get("isActive")
        return cls(
            scope=data.get("scope"),
            ongoing=data.get("ongoing"),
            mobility=data.get("mobility"),
            is_active=None if is_active is None else bool(is_active),
        )


Agreements = Dict[str, Dict[str, CommissionValues]]

NO_AGREEMENT = CommissionValues()


def agreements_from_dict(data: Mapping[str, Mapping[str, Mapping[str, Any]]]) -> Agreements:
    return {
        carrier: {
            normalize_product_type(product_type): CommissionValues.from_dict(values or {})
            for product_type, values in (by_type or {}).items()
        }
        for carrier, by_type in data.items()
    }


def lookup_agreement(agreements: Agreements, carrier: str, product_type: str) -> CommissionValues:
    """Agreement for (carrier, product); an absent pair reads as all rates zero."""
    values = agreements.get(carrier, {}).get(product_type)
    if values is None:
        logger.debug(f"No agreement for {carrier}/{product_type} - rates treated as 0")
        return NO_AGREEMENT
    return values

# =============================================================================
# 5. COMMISSION RESULTS
# =============================================================================

class RateSource(Enum):
    LOCKED = "locked"        # policy frozen to a historical rate
    AGREEMENT = "agreement"  # live carrier agreement
    DEFAULT = "default"      # nothing configured, reads as 0


@dataclass(frozen=True)
class ResolvedRate:
    value: Decimal
    source: RateSource


@dataclass(frozen=True)
class PolicyCommission:
    premium: Decimal
    scope: Decimal
    ongoing: Decimal
    ongoing_rate: ResolvedRate


@dataclass(frozen=True)
class PeriodStats:
    count: int
    total_premium: Decimal = ZERO
    total_scope: Decimal = ZERO
    total_ongoing: Decimal = ZERO


@dataclass(frozen=True)
class SeriesPoint:
    label: str
    year: int
    month: int  # 0-11
    stats: PeriodStats


@dataclass(frozen=True)
class CarrierShare:
    carrier: str
    ongoing_amount: Decimal
    percentage_of_total: Decimal

# =============================================================================
# 6. AGE & PREMIUM RESOLUTION
# =============================================================================

def parse_birth_date(value: BirthDate) -> date:
    if value is not None and pd.isna(value):
        raise InvalidBirthDateError(f"Birth date is missing or not a date: {value!r}")
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        raise InvalidBirthDateError(f"Birth date is missing or not a date: {value!r}")
    try:
        parsed = pd.to_datetime(value.strip())
    except (ValueError, TypeError) as exc:
        raise InvalidBirthDateError(f"Unparseable birth date: {value!r}") from exc
    if pd.isna(parsed):
        raise InvalidBirthDateError(f"Unparseable birth date: {value!r}")
    return parsed.date()


def age_at(birth_date: BirthDate, target_month: int, target_year: int) -> int:
    """
    Age in whole years at the given month (0-11) of target_year.
    Month granularity: the day of birth is ignored.
    """
    if not 0 <= target_month <= 11:
        raise ValueError(f"target_month must be 0-11, got {target_month}")
    born = parse_birth_date(birth_date)
    age = target_year - born.year
    if target_month < born.month - 1:
        age -= 1
    return age


def schedule_premium(schedule: Iterable[PremiumScheduleItem], age: int) -> Optional[Decimal]:
    # exact match only; on duplicate ages the first entry wins
    for item in schedule:
        if item.age == age:
            return item.premium
    return None


def effective_premium(
    policy: Policy,
    birth_date: BirthDate,
    target_month: int,
    target_year: int,
    shared_schedule: Sequence[PremiumScheduleItem] = (),
) -> Decimal:
    """
    Premium due for the policy in the target month.

    Schedulable products look up the owner's age in their own schedule, or in
    the shared schedule when they have none; an age outside the table falls
    back to the flat monthly cost. The birth date is only read when a schedule
    is actually consulted.
    """
    if policy.product_type not in SCHEDULED_TYPES:
        return policy.monthly_cost
    schedule = policy.premium_schedule or tuple(shared_schedule)
    if not schedule:
        return policy.monthly_cost
    age = age_at(birth_date, target_month, target_year)
    premium = schedule_premium(schedule, age)
    return policy.monthly_cost if premium is None else premium


def shared_schedule_for(customer: Customer, member: FamilyMember) -> Tuple[PremiumScheduleItem, ...]:
    if not member.premium_shared_with_primary:
        return ()
    for policy in customer.policies:
        if policy.product_type in SCHEDULED_TYPES and policy.premium_schedule:
            return policy.premium_schedule
    return ()


def iter_policies(customer: Customer) -> Iterator[Tuple[Person, Policy, Tuple[PremiumScheduleItem, ...]]]:
    """Every (owner, policy, shared schedule) of a customer and their dependents."""
    for policy in customer.policies:
        yield customer, policy, ()
    for member in customer.family_members:
        shared = shared_schedule_for(customer, member)
        for policy in member.policies:
            yield member, policy, shared


def customer_total_premium(customer: Customer, target_month: int, target_year: int) -> Decimal:
    total = ZERO
    for owner, policy, shared in iter_policies(customer):
        if policy.is_active:
            total += effective_premium(policy, owner.date_of_birth, target_month, target_year, shared)
    return total


def schedule_from_frame(
    frame: pd.DataFrame, age_column: str, premium_column: str,
) -> Tuple[PremiumScheduleItem, ...]:
    """
    Build a premium schedule from uploaded tabular rows.

    Ages are read as leading integers, premiums keep only digits and dots
    (currency signs and thousands separators are dropped). Rows without a
    usable age or premium are skipped; for duplicate ages the first row wins.
    """
    ages = pd.to_numeric(
        frame[age_column].astype(str).str.extract(r"^\s*(\d+)", expand=False), errors="coerce"
    )
    premium_text = frame[premium_column].astype(str).str.replace(r"[^\d.]", "", regex=True)
    table = pd.DataFrame({
        "age": ages,
        "premium_text": premium_text,
        "premium": pd.to_numeric(premium_text, errors="coerce"),
    }).dropna(subset=["age", "premium"])

    dropped = len(frame) - len(table)
    if dropped:
        logger.warning(f"Premium schedule: skipped {dropped} row(s) without a numeric age/premium")

    deduped = table.drop_duplicates(subset="age", keep="first")
    if len(deduped) < len(table):
        logger.warning(
            f"Premium schedule: {len(table) - len(deduped)} duplicate age row(s) ignored (first kept)"
        )

    return tuple(
        PremiumScheduleItem(age=int(row.age), premium=Decimal(row.premium_text))
        for row in deduped.itertuples(index=False)
    )

# =============================================================================
# 7. STANDARD PRODUCT COMMISSIONS
# =============================================================================

def resolve_ongoing_rate(policy: Policy, agreement: CommissionValues) -> ResolvedRate:
    """Locked override first, then the live agreement, then zero."""
    if policy.fixed_commission_rate is not None:
        return ResolvedRate(policy.fixed_commission_rate, RateSource.LOCKED)
    agreed = parse_decimal(agreement.ongoing)
    if agreed is not None:
        return ResolvedRate(agreed, RateSource.AGREEMENT)
    return ResolvedRate(ZERO, RateSource.DEFAULT)


def standard_commission(policy: Policy, premium: Decimal, agreement: CommissionValues) -> PolicyCommission:
    rate = resolve_ongoing_rate(policy, agreement)
    if not policy.is_active:
        return PolicyCommission(premium, ZERO, ZERO, rate)

    ongoing = premium * rate.value / HUNDRED
    if policy.agent_appointment_only:
        scope = ZERO
    else:
        # one-time commission, annualized as a full year of premium
        scope = premium * MONTHS_PER_YEAR * agreement.scope_rate / HUNDRED
    return PolicyCommission(premium, scope, ongoing, rate)

# =============================================================================
# 8. FINANCIAL PRODUCT COMMISSIONS
# =============================================================================

@dataclass(frozen=True)
class FinancialRates:
    scope: Decimal = ZERO
    ongoing: Decimal = ZERO
    mobility: Decimal = ZERO

    def __post_init__(self):
        for name in ("scope", "ongoing", "mobility"):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))

    @property
    def effective_mobility(self) -> Decimal:
        # carriers often quote a single acquisition rate
        return self.mobility or self.scope


def financial_scope(inputs: FinancialInputs, rates: FinancialRates) -> Decimal:
    """
    One-time scope commission on newly brought-in money:
        mobility x mobility%  +  lump sum x scope%  +  monthly deposit x 12 x scope%
    Accumulation already under management earns no scope.
    """
    scope_rate = rates.scope / HUNDRED
    mobility_rate = rates.effective_mobility / HUNDRED

    total = ZERO
    if inputs.mobility > 0:
        total += inputs.mobility * mobility_rate
    if inputs.lump_sum_deposit > 0:
        total += inputs.lump_sum_deposit * scope_rate
    if inputs.monthly_deposit > 0:
        total += inputs.monthly_deposit * MONTHS_PER_YEAR * scope_rate
    return total


def financial_ongoing(inputs: FinancialInputs, rates: FinancialRates) -> Decimal:
    """
    Monthly ongoing commission:
        base x ongoing% / 12  +  lump sum x ongoing% / 12  +  monthly deposit x ongoing%
    where base is the mobility amount when present, else the accumulation.
    """
    ongoing_rate = rates.ongoing / HUNDRED

    total = ZERO
    # mobility already contains the transferred accumulation
    base_amount = inputs.mobility if inputs.mobility > 0 else inputs.accumulation
    if base_amount > 0:
        total += base_amount * ongoing_rate / MONTHS_PER_YEAR
    if inputs.lump_sum_deposit > 0:
        total += inputs.lump_sum_deposit * ongoing_rate / MONTHS_PER_YEAR
    if inputs.monthly_deposit > 0:
        total += inputs.monthly_deposit * ongoing_rate
    return total


def accumulated_balance(inputs: FinancialInputs, month_index: int, monthly_return_rate: RawRate = ZERO) -> Decimal:
    """Balance after month_index months of compounding returns plus monthly deposits."""
    multiplier = 1 + to_decimal(monthly_return_rate) / HUNDRED
    balance = inputs.accumulation + inputs.mobility + inputs.lump_sum_deposit
    for _ in range(month_index):
        balance = balance * multiplier + inputs.monthly_deposit
    return balance


def weighted_return(tracks: Iterable[InvestmentTrack], track_returns: Mapping[str, RawRate]) -> Decimal:
    """Blend per-track monthly returns by allocation weight; unknown tracks return 0."""
    tracks = list(tracks)
    total_weight = sum((track.weight for track in tracks), ZERO)
    if tracks and total_weight != HUNDRED:
        logger.warning(f"Investment track weights sum to {total_weight}%, not 100% - blending as given")

    blended = ZERO
    for track in tracks:
        blended += track.weight / HUNDRED * to_decimal(track_returns.get(track.name))
    return blended


def balance_projection(
    details: FinancialDetails,
    months: int,
    track_returns: Optional[Mapping[str, RawRate]] = None,
) -> pd.DataFrame:
    """
    Month-by-month balance development for a financial policy.
    The monthly return is the policy's track-weighted return (0 without a table).
    """
    inputs = details.inputs()
    monthly_return = weighted_return(details.tracks, track_returns) if track_returns else ZERO
    multiplier = 1 + monthly_return / HUNDRED

    balances = []
    balance = accumulated_balance(inputs, 0)
    for _ in range(months):
        balances.append(float(round_money(balance)))
        balance = balance * multiplier + inputs.monthly_deposit

    frame = pd.DataFrame({"month_index": range(months), "balance": balances})
    if details.established is not None:
        start = pd.Period(year=details.established.year, month=details.established.month, freq="M")
        frame["period"] = pd.period_range(start=start, periods=months, freq="M")
    return frame


def financial_commission(policy: Policy, agreement: CommissionValues) -> PolicyCommission:
    """Financial products are charged their flat monthly cost as premium."""
    rate = resolve_ongoing_rate(policy, agreement)
    premium = policy.monthly_cost
    if not policy.is_active:
        return PolicyCommission(premium, ZERO, ZERO, rate)

    inputs = policy.details.inputs()
    rates = FinancialRates(scope=agreement.scope_rate, ongoing=rate.value, mobility=agreement.mobility_rate)
    scope = ZERO if policy.agent_appointment_only else financial_scope(inputs, rates)
    return PolicyCommission(premium, scope, financial_ongoing(inputs, rates), rate)

# =============================================================================
# 9. POLICY DRAFTS
# =============================================================================

@dataclass
class PolicyDraft:
    """Editable policy form state; becomes a Policy only through commit()."""
    product_type: str = ""
    carrier: str = ""
    monthly_cost: RawRate = None
    premium_schedule: List[PremiumScheduleItem] = field(default_factory=list)
    agent_appointment_only: bool = False
    status: str = ACTIVE
    details: FinancialDetails = field(default_factory=FinancialDetails)
    issue_date: Optional[date] = None
    policy_id: Optional[str] = None

    @classmethod
    def from_policy(cls, policy: Policy) -> "PolicyDraft":
        return cls(
            product_type=policy.product_type,
            carrier=policy.carrier,
            monthly_cost=policy.monthly_cost,
            premium_schedule=list(policy.premium_schedule),
            agent_appointment_only=policy.agent_appointment_only,
            status=policy.status,
            details=policy.details,
            issue_date=policy.issue_date,
            policy_id=policy.policy_id,
        )


def commit(draft: PolicyDraft, base: Optional[Policy] = None) -> Policy:
    """
    Validate a draft and produce the committed Policy.

    When editing (base given) the policy keeps its id and its locked
    commission rate; drafts never write the lock.
    """
    problems: List[str] = []
    product_type = normalize_product_type(draft.product_type)
    category = PRODUCT_CATEGORIES.get(product_type)
    monthly_cost = to_decimal(draft.monthly_cost)

    if not str(draft.carrier or "").strip():
        problems.append("carrier is required")
    if category is None:
        problems.append(f"unknown product type '{draft.product_type}'")
    if draft.status not in POLICY_STATUSES:
        problems.append(f"unknown status '{draft.status}'")
    if monthly_cost < 0:
        problems.append("monthly cost cannot be negative")
    if draft.premium_schedule and product_type not in SCHEDULED_TYPES:
        problems.append(f"premium schedules are not supported for '{product_type}'")
    if category is ProductCategory.STANDARD and monthly_cost == 0 and not draft.premium_schedule:
        problems.append("a monthly cost or a premium schedule is required")
    if category is ProductCategory.FINANCIAL and monthly_cost == 0 and not draft.details.has_amounts:
        problems.append("a monthly cost, balance or deposit is required")
    if problems:
        raise PolicyValidationError(problems)

    policy_id = draft.policy_id or (base.policy_id if base else None) or uuid.uuid4().hex[:9]
    return Policy(
        policy_id=policy_id,
        product_type=product_type,
        carrier=draft.carrier.strip(),
        monthly_cost=monthly_cost,
        premium_schedule=tuple(draft.premium_schedule),
        agent_appointment_only=draft.agent_appointment_only,
        status=draft.status,
        details=draft.details,
        fixed_commission_rate=base.fixed_commission_rate if base else None,
        issue_date=draft.issue_date or (base.issue_date if base else None) or date.today(),
    )

# =============================================================================
# 10. RATE CHANGE EFFECTIVITY
# =============================================================================

class EffectivityMode(str, Enum):
    RETROACTIVE = "retroactive"  # existing policies follow the new rate
    PROSPECTIVE = "prospective"  # existing policies stay on the old rate


@dataclass(frozen=True)
class RateChange:
    selector: str  # carrier name or GLOBAL
    product_type: str
    old_rate: RawRate
    new_rate: RawRate

    @property
    def is_global(self) -> bool:
        return self.selector == GLOBAL


@dataclass(frozen=True)
class EffectivityResult:
    change: RateChange
    mode: EffectivityMode
    policies_updated: int
    staged: bool = False  # global change waiting for propagate_defaults()


def _revised(policy: Policy, mode: EffectivityMode, lock_rate: Decimal) -> Policy:
    if mode is EffectivityMode.RETROACTIVE:
        if policy.fixed_commission_rate is None:
            return policy
        return replace(policy, fixed_commission_rate=None)
    if policy.fixed_commission_rate is not None:
        # already locked to an earlier rate
        return policy
    return replace(policy, fixed_commission_rate=lock_rate)


class RateChangeEffectivityManager:
    """
    Applies an ongoing-rate change to the agreement table and decides whether
    existing policies follow it (retroactive) or keep their old rate
    (prospective). This is the only writer of Policy.fixed_commission_rate.
    """

    def __init__(
        self,
        agreements: Agreements,
        selected_carriers: Iterable[str],
        default_agreements: Optional[Dict[str, CommissionValues]] = None,
    ):
        self.agreements = agreements
        self.selected_carriers: List[str] = list(selected_carriers)
        self.default_agreements: Dict[str, CommissionValues] = (
            default_agreements if default_agreements is not None else {}
        )
        self.pending: Optional[RateChange] = None
        self.history: List[EffectivityResult] = []
        self._staged_modes: Dict[str, EffectivityMode] = {}

    # -----------------------------------------------------------------
    # PENDING CHANGE
    # -----------------------------------------------------------------
    def request_change(self, selector: str, product_type: str, new_rate: RawRate) -> RateChange:
        """Stage a change, taking the old rate from the current agreement or template."""
        product_type = normalize_product_type(product_type)
        if selector == GLOBAL:
            current = self.default_agreements.get(product_type, NO_AGREEMENT)
        else:
            current = lookup_agreement(self.agreements, selector, product_type)
        return self.stage(RateChange(selector, product_type, current.ongoing, new_rate))

    def stage(self, change: RateChange) -> RateChange:
        category_of(change.product_type)
        if self.pending is not None:
            logger.info(f"Replacing pending rate change {self.pending} with {change}")
        self.pending = change
        return change

    def cancel(self) -> RateChange:
        change = self._require_pending()
        self.pending = None
        return change

    def _require_pending(self) -> RateChange:
        if self.pending is None:
            raise NoPendingChangeError("No rate change is pending")
        return self.pending

    # -----------------------------------------------------------------
    # CONFIRMATION
    # -----------------------------------------------------------------
    def confirm(self, customers: Sequence[Customer], mode: Union[EffectivityMode, str]) -> EffectivityResult:
        change = self._require_pending()
        mode = EffectivityMode(mode)

        if change.is_global:
            template = self.default_agreements.get(change.product_type, NO_AGREEMENT)
            self.default_agreements[change.product_type] = replace(template, ongoing=change.new_rate)
            self._staged_modes[change.product_type] = mode
            result = EffectivityResult(change, mode, 0, staged=True)
            logger.info(
                f"Default {change.product_type} ongoing rate staged at {change.new_rate}% ({mode.value})"
            )
        else:
            lock_rate = to_decimal(change.old_rate)

            def revise(policy: Policy) -> Policy:
                if policy.product_type != change.product_type or policy.carrier != change.selector:
                    return policy
                return _revised(policy, mode, lock_rate)

            batch, updated = self._plan(customers, revise)
            self._swap(batch)
            self._commit_ongoing(change.selector, change.product_type, change.new_rate)
            result = EffectivityResult(change, mode, updated)
            logger.info(
                f"{change.selector}/{change.product_type} ongoing {change.old_rate}% -> "
                f"{change.new_rate}% ({mode.value}): {updated} policies updated"
            )

        self.pending = None
        self.history.append(result)
        return result

    def apply(
        self, change: RateChange, customers: Sequence[Customer], mode: Union[EffectivityMode, str],
    ) -> EffectivityResult:
        self.stage(change)
        return self.confirm(customers, mode)

    def propagate_defaults(self, customers: Sequence[Customer]) -> int:
        """
        Fan the default template out to every selected carrier.

        Product types with a confirmed global rate change apply the recorded
        mode to their policies at selected carriers; prospective locks keep
        each policy on its carrier's rate from before the fan-out.
        """
        carriers: Set[str] = set(self.selected_carriers)
        staged_modes = dict(self._staged_modes)

        def revise(policy: Policy) -> Policy:
            mode = staged_modes.get(policy.product_type)
            if mode is None or policy.carrier not in carriers:
                return policy
            lock_rate = lookup_agreement(self.agreements, policy.carrier, policy.product_type).ongoing_rate
            return _revised(policy, mode, lock_rate)

        batch, updated = self._plan(customers, revise)

        merged: Agreements = {}
        for carrier in self.selected_carriers:
            by_type = dict(self.agreements.get(carrier, {}))
            for product_type, template in self.default_agreements.items():
                by_type[product_type] = by_type.get(product_type, NO_AGREEMENT).merged_with(template)
            merged[carrier] = by_type

        self._swap(batch)
        self.agreements.update(merged)
        self._staged_modes.clear()
        logger.info(
            f"Default agreements propagated to {len(merged)} carriers: {updated} policies updated"
        )
        return updated

    # -----------------------------------------------------------------
    # BATCH MECHANICS
    # -----------------------------------------------------------------
    @staticmethod
    def _plan(
        customers: Sequence[Customer], revise: Callable[[Policy], Policy],
    ) -> Tuple[List[Tuple[Person, List[Policy]]], int]:
        """Compute every revised policy list without touching the book."""
        batch: List[Tuple[Person, List[Policy]]] = []
        updated = 0
        for customer in customers:
            for person in customer.people():
                policies = [revise(policy) for policy in person.policies]
                changed = sum(1 for old, new in zip(person.policies, policies) if old is not new)
                if changed:
                    batch.append((person, policies))
                    updated += changed
        return batch, updated

    @staticmethod
    def _swap(batch: List[Tuple[Person, List[Policy]]]) -> None:
        for person, policies in batch:
            person.policies = policies

    def _commit_ongoing(self, carrier: str, product_type: str, new_rate: RawRate) -> None:
        by_type = dict(self.agreements.get(carrier, {}))
        by_type[product_type] = replace(by_type.get(product_type, NO_AGREEMENT), ongoing=new_rate)
        self.agreements[carrier] = by_type

# =============================================================================
# 11. THE ENGINE: PERIOD AGGREGATION
# =============================================================================

BOOK_COLUMNS = [
    "customer_id", "person_id", "policy_id", "carrier", "product_type", "category",
    "premium", "scope", "ongoing", "ongoing_rate", "rate_source",
]


def _created_by(customer: Customer, period: pd.Period) -> bool:
    created = _parse_optional_date(customer.created_at)
    if created is None:
        return True
    return (created.year, created.month) <= (period.year, period.month)


class CommissionEngine:
    def __init__(self, agreements: Optional[Agreements] = None, selected_carriers: Iterable[str] = ()):
        self.agreements: Agreements = agreements if agreements is not None else {}
        self.selected_carriers: List[str] = list(selected_carriers)

    # -----------------------------------------------------------------
    # RATE LOOKUP
    # -----------------------------------------------------------------
    def _get_agreement(self, carrier: str, product_type: str) -> CommissionValues:
        return lookup_agreement(self.agreements, carrier, product_type)

    def offers_product(self, carrier: str, product_type: str) -> bool:
        """Whether the agent sells this product through this carrier."""
        agreement = self._get_agreement(carrier, product_type)
        if product_type in SWITCH_ONLY_TYPES:
            return bool(agreement.is_active)
        return any(rate > 0 for rate in (agreement.scope_rate, agreement.ongoing_rate, agreement.mobility_rate))

    # -----------------------------------------------------------------
    # SINGLE POLICY
    # -----------------------------------------------------------------
    def policy_commission(
        self,
        policy: Policy,
        birth_date: BirthDate,
        target_month: int,
        target_year: int,
        shared_schedule: Sequence[PremiumScheduleItem] = (),
    ) -> PolicyCommission:
        agreement = self._get_agreement(policy.carrier, policy.product_type)
        if policy.category is ProductCategory.FINANCIAL:
            return financial_commission(policy, agreement)
        premium = effective_premium(policy, birth_date, target_month, target_year, shared_schedule)
        return standard_commission(policy, premium, agreement)

    def _counted(
        self, customers: Iterable[Customer], target_month: int, target_year: int,
    ) -> Iterator[Tuple[Customer, Person, Policy, PolicyCommission]]:
        """Active policies at selected carriers, with their commissions."""
        selected = set(self.selected_carriers)
        for customer in customers:
            for owner, policy, shared in iter_policies(customer):
                if not policy.is_active or policy.carrier not in selected:
                    continue
                commission = self.policy_commission(
                    policy, owner.date_of_birth, target_month, target_year, shared
                )
                yield customer, owner, policy, commission

    # -----------------------------------------------------------------
    # PERIOD TOTALS
    # -----------------------------------------------------------------
    def stats_for_period(self, customers: Sequence[Customer], target_month: int, target_year: int) -> PeriodStats:
        total_premium = total_scope = total_ongoing = ZERO
        for _, _, _, commission in self._counted(customers, target_month, target_year):
            total_premium += commission.premium
            total_scope += commission.scope
            total_ongoing += commission.ongoing
        return PeriodStats(len(customers), total_premium, total_scope, total_ongoing)

    def monthly_series(
        self,
        customers: Sequence[Customer],
        as_of: Optional[date] = None,
        window: int = DEFAULT_SERIES_WINDOW,
    ) -> List[SeriesPoint]:
        """
        One point per calendar month for the trailing window ending at as_of.
        Each month only counts customers created on or before it, so the series
        shows the book as it grew. A customer without created_at is counted in
        every month.
        """
        as_of = as_of or date.today()
        current = pd.Period(year=as_of.year, month=as_of.month, freq="M")
        points: List[SeriesPoint] = []
        for offset in range(window - 1, -1, -1):
            period = current - offset
            month, year = period.month - 1, period.year
            book = [c for c in customers if _created_by(c, period)]
            points.append(SeriesPoint(
                label=f"{month + 1}/{str(year)[2:]}",
                year=year,
                month=month,
                stats=self.stats_for_period(book, month, year),
            ))
        return points

    def breakdown_by_carrier(
        self, customers: Sequence[Customer], target_month: int, target_year: int,
    ) -> List[CarrierShare]:
        """Ongoing commission per selected carrier, largest first."""
        totals: Dict[str, Decimal] = {carrier: ZERO for carrier in self.selected_carriers}
        for _, _, policy, commission in self._counted(customers, target_month, target_year):
            totals[policy.carrier] += commission.ongoing

        grand_total = sum(totals.values(), ZERO)
        shares = [
            CarrierShare(
                carrier=carrier,
                ongoing_amount=amount,
                percentage_of_total=amount / grand_total * HUNDRED if grand_total > 0 else ZERO,
            )
            for carrier, amount in totals.items()
        ]
        shares.sort(key=lambda share: share.ongoing_amount, reverse=True)
        return shares

    # -----------------------------------------------------------------
    # REPORT FRAMES
    # -----------------------------------------------------------------
    def book_frame(self, customers: Sequence[Customer], target_month: int, target_year: int) -> pd.DataFrame:
        """Per-policy detail for the period, one row per counted policy."""
        rows = []
        for customer, owner, policy, commission in self._counted(customers, target_month, target_year):
            rows.append({
                "customer_id": customer.person_id,
                "person_id": owner.person_id,
                "policy_id": policy.policy_id,
                "carrier": policy.carrier,
                "product_type": policy.product_type,
                "category": policy.category.value,
                "premium": float(round_money(commission.premium)),
                "scope": float(round_money(commission.scope)),
                "ongoing": float(round_money(commission.ongoing)),
                "ongoing_rate": float(commission.ongoing_rate.value),
                "rate_source": commission.ongoing_rate.source.value,
            })
        return pd.DataFrame(rows, columns=BOOK_COLUMNS)

    def series_frame(
        self,
        customers: Sequence[Customer],
        as_of: Optional[date] = None,
        window: int = DEFAULT_SERIES_WINDOW,
    ) -> pd.DataFrame:
        rows = []
        for point in self.monthly_series(customers, as_of=as_of, window=window):
            rows.append({
                "label": point.label,
                "year": point.year,
                "month": point.month,
                "customers": point.stats.count,
                "premium": float(round_money(point.stats.total_premium)),
                "scope": float(round_money(point.stats.total_scope)),
                "ongoing": float(round_money(point.stats.total_ongoing)),
            })
        return pd.DataFrame(rows, columns=["label", "year", "month", "customers", "premium", "scope", "ongoing"])

    def breakdown_frame(self, customers: Sequence[Customer], target_month: int, target_year: int) -> pd.DataFrame:
        shares = self.breakdown_by_carrier(customers, target_month, target_year)
        return pd.DataFrame(
            [
                {
                    "carrier": share.carrier,
                    "ongoing": float(round_money(share.ongoing_amount)),
                    "percentage": float(round_money(share.percentage_of_total)),
                }
                for share in shares
            ],
            columns=["carrier", "ongoing", "percentage"],
        )

    def print_summary(self, customers: Sequence[Customer], target_month: int, target_year: int) -> None:
        """Print period totals and the carrier breakdown to console."""
        stats = self.stats_for_period(customers, target_month, target_year)
        detail = self.book_frame(customers, target_month, target_year)

        print("\n" + "=" * 80)
        print(f"  AGENT COMMISSION SUMMARY - {target_month + 1:02d}/{target_year}")
        print("=" * 80)
        print(f"  Customers:       {stats.count}")
        print(f"  Policies:        {len(detail)}")
        print(f"  Total Premium:   {round_money(stats.total_premium):,}")
        print(f"  Scope:           {round_money(stats.total_scope):,}")
        print(f"  Ongoing:         {round_money(stats.total_ongoing):,}")
        locked = sum(policy.is_locked for _, _, policy, _ in self._counted(customers, target_month, target_year))
        print(f"  Locked Policies: {locked}")
        print("=" * 80)

        if detail.empty:
            print("No commissionable policies.")
            return

        print()
        print(self.breakdown_frame(customers, target_month, target_year).to_string(index=False))

# =============================================================================
# 12. EXAMPLE EXECUTION
# =============================================================================

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    agreements = agreements_from_dict({
        "Harel":  {"health": {"scope": "20", "ongoing": "5"}, "pension": {"scope": "0.5", "ongoing": "0.2"}},
        "Migdal": {"life": {"scope": "15", "ongoing": "4"}, "elementary": {"isActive": True}},
    })
    engine = CommissionEngine(agreements, selected_carriers=["Harel", "Migdal"])

    customers = [
        Customer(
            person_id="012345678",
            first_name="Dana",
            last_name="Levi",
            date_of_birth="1988-04-10",
            created_at=date(2025, 11, 3),
            policies=[
                Policy("P-1", "health", "Harel", monthly_cost=90,
                       premium_schedule=[PremiumScheduleItem(37, 120), PremiumScheduleItem(38, 126)]),
                Policy("P-2", "pension", "Harel",
                       details=FinancialDetails(accumulation=50000, mobility=10000, monthly_deposit=1500)),
            ],
            family_members=[
                FamilyMember(
                    person_id="223344556",
                    first_name="Noa",
                    last_name="Levi",
                    date_of_birth="2016-09-01",
                    relationship="child",
                    premium_shared_with_primary=True,
                    policies=[Policy("P-3", "health", "Harel", monthly_cost=40)],
                ),
            ],
        ),
        Customer(
            person_id="087654321",
            first_name="Yossi",
            last_name="Cohen",
            date_of_birth="1975-12-22",
            created_at=date(2026, 1, 15),
            policies=[Policy("P-4", "life", "Migdal", monthly_cost=210, agent_appointment_only=True)],
        ),
    ]

    # --- Scenario 1: current book ---
    engine.print_summary(customers, target_month=1, target_year=2026)

    # --- Scenario 2: Harel raises health ongoing 5% -> 8%, new sales only ---
    manager = RateChangeEffectivityManager(engine.agreements, engine.selected_carriers)
    manager.request_change("Harel", "health", "8")
    result = manager.confirm(customers, EffectivityMode.PROSPECTIVE)
    print(f"\n  Locked {result.policies_updated} existing policies at {result.change.old_rate}%")
    engine.print_summary(customers, target_month=1, target_year=2026)

    # --- Scenario 3: book growth over the trailing year ---
    print()
    print(engine.series_frame(customers, as_of=date(2026, 2, 1)).to_string(index=False))
