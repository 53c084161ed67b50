from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from cuentas.categories import normalize_tag
from cuentas.currency_conversion import project_for_display
from cuentas.dates import (
    FALLBACK_EPOCH,
    days_left_in_month,
    is_relative_sentinel,
    month_end,
    month_start,
    normalize_date,
    parse_date_strict,
    shift_month,
)
from cuentas.transactions import (
    RECURRING_GOAL_TYPES,
    ZERO,
    Preferences,
    Transaction,
    coerce_amount,
)

HUNDRED = Decimal("100")
DASHBOARD_TOP_CATEGORIES = 3
DASHBOARD_RECENT_LIMIT = 7
MIN_VALID_YEAR = 2000
MOVEMENTS_PAGE_SIZE = 10


@dataclass(frozen=True)
class Window:
    start: date
    end: date

    @classmethod
    def for_month(cls, year: int, month: int) -> "Window":
        first = date(year, month, 1)
        return cls(start=first, end=month_end(first))

    @classmethod
    def for_year(cls, year: int) -> "Window":
        return cls(start=date(year, 1, 1), end=date(year, 12, 31))

    @classmethod
    def current_month(cls, today: Optional[date] = None) -> "Window":
        reference = today or date.today()
        return cls.for_month(reference.year, reference.month)

    def previous_month(self) -> "Window":
        previous = shift_month(month_start(self.start), -1)
        return Window.for_month(previous.year, previous.month)

    def contains(self, value: date) -> bool:
        return self.start <= value <= self.end


@dataclass(frozen=True)
class GoalPolicy:
    """Which expenses count against the monthly goal.

    The dashboard and stats views leave recurring fixed costs out of goal
    pressure; the movements view counted them. Both honour the per-item
    budget exclusion flag.
    """

    exclude_recurring: bool = True
    respect_budget_flag: bool = True


DEFAULT_GOAL_POLICY = GoalPolicy()


@dataclass(frozen=True)
class Totals:
    income: Decimal
    expense: Decimal
    balance: Decimal


@dataclass(frozen=True)
class CategoryShare:
    tag: str
    total: Decimal
    percentage: Decimal


@dataclass(frozen=True)
class DashboardSummary:
    month: date
    totals: Totals
    goal_expense: Decimal
    monthly_goal: Decimal
    goal_progress: Decimal
    previous_goal_expense: Decimal
    month_over_month_change: Decimal
    days_left: int
    top_categories: List[CategoryShare] = field(default_factory=list)
    recent: List[Transaction] = field(default_factory=list)


@dataclass(frozen=True)
class PeriodStats:
    year: int
    month: Optional[int]
    totals: Totals
    goal_expense: Decimal
    goal_progress: Decimal
    categories: List[CategoryShare]
    year_trend: List[Decimal]
    available_years: List[int]


def filter_window(
    transactions: Iterable[Transaction],
    window: Window,
    *,
    today: Optional[date] = None,
    fallback: str = FALLBACK_EPOCH,
) -> List[Transaction]:
    reference = today or date.today()
    return [
        txn
        for txn in transactions
        if window.contains(normalize_date(txn.date, today=reference, fallback=fallback))
    ]


def apply_travel_mode(
    transactions: Iterable[Transaction],
    start: Optional[date],
    *,
    today: Optional[date] = None,
    fallback: str = FALLBACK_EPOCH,
) -> List[Transaction]:
    """Hide everything dated before ``start``; relative dates always stay."""
    if start is None:
        return list(transactions)
    reference = today or date.today()
    return [
        txn
        for txn in transactions
        if is_relative_sentinel(txn.date)
        or normalize_date(txn.date, today=reference, fallback=fallback) >= start
    ]


def compute_totals(transactions: Iterable[Transaction]) -> Totals:
    income = ZERO
    expense = ZERO
    for txn in transactions:
        if txn.is_income:
            income += coerce_amount(txn.amount)
        elif txn.is_expense:
            expense += coerce_amount(txn.amount)
    return Totals(income=income, expense=expense, balance=income - expense)


def is_goal_relevant(txn: Transaction, policy: GoalPolicy = DEFAULT_GOAL_POLICY) -> bool:
    if not txn.is_expense:
        return False
    if policy.respect_budget_flag and txn.exclude_from_budget:
        return False
    if policy.exclude_recurring and txn.goal_type in RECURRING_GOAL_TYPES:
        return False
    return True


def goal_relevant_expense(
    transactions: Iterable[Transaction],
    policy: GoalPolicy = DEFAULT_GOAL_POLICY,
) -> Decimal:
    return sum(
        (coerce_amount(txn.amount) for txn in transactions if is_goal_relevant(txn, policy)),
        ZERO,
    )


def goal_progress(expense: Decimal, monthly_goal: Decimal | int | float | str) -> Decimal:
    goal = coerce_amount(monthly_goal)
    if goal <= ZERO:
        return ZERO
    progress = coerce_amount(expense) / goal * HUNDRED
    return max(ZERO, min(progress, HUNDRED))


def month_over_month_change(current: Decimal, previous: Decimal) -> Decimal:
    if previous <= ZERO:
        return ZERO
    return (current - previous) / previous * HUNDRED


def category_breakdown(
    transactions: Iterable[Transaction],
    *,
    top_n: Optional[int] = None,
    policy: Optional[GoalPolicy] = None,
) -> List[CategoryShare]:
    """Expense totals per tag, largest first.

    With ``policy`` only goal-relevant expenses are grouped. Percentages are
    relative to the whole grouped set, so a top-N cut sums to at most 100.
    """
    totals: Dict[str, Decimal] = {}
    for txn in transactions:
        if not txn.is_expense:
            continue
        if policy is not None and not is_goal_relevant(txn, policy):
            continue
        totals[txn.tag] = totals.get(txn.tag, ZERO) + coerce_amount(txn.amount)

    grand_total = sum(totals.values(), ZERO)
    ranked = sorted(totals.items(), key=lambda item: item[1], reverse=True)
    if top_n is not None:
        ranked = ranked[:top_n]

    shares: List[CategoryShare] = []
    for tag, total in ranked:
        percentage = total / grand_total * HUNDRED if grand_total > ZERO else ZERO
        shares.append(CategoryShare(tag=tag, total=total, percentage=percentage))
    return shares


def year_trend(
    transactions: Iterable[Transaction],
    year: int,
    *,
    policy: GoalPolicy = DEFAULT_GOAL_POLICY,
    today: Optional[date] = None,
    fallback: str = FALLBACK_EPOCH,
) -> List[Decimal]:
    reference = today or date.today()
    buckets = [ZERO] * 12
    for txn in transactions:
        if not is_goal_relevant(txn, policy):
            continue
        txn_date = normalize_date(txn.date, today=reference, fallback=fallback)
        if txn_date.year != year:
            continue
        buckets[txn_date.month - 1] += coerce_amount(txn.amount)
    return buckets


def available_years(
    transactions: Iterable[Transaction],
    *,
    today: Optional[date] = None,
) -> List[int]:
    reference = today or date.today()
    years = {reference.year}
    for txn in transactions:
        parsed = parse_date_strict(txn.date, today=reference)
        if parsed is not None and parsed.year > MIN_VALID_YEAR:
            years.add(parsed.year)
    return sorted(years, reverse=True)


def recent_transactions(
    transactions: Sequence[Transaction],
    *,
    limit: Optional[int] = None,
    today: Optional[date] = None,
    fallback: str = FALLBACK_EPOCH,
) -> List[Transaction]:
    reference = today or date.today()
    ordered = sorted(
        transactions,
        key=lambda txn: normalize_date(txn.date, today=reference, fallback=fallback),
        reverse=True,
    )
    if limit is not None:
        return ordered[:limit]
    return ordered


def search_transactions(
    transactions: Iterable[Transaction],
    *,
    text: Optional[str] = None,
    transaction_type: Optional[str] = None,
    tag: Optional[str] = None,
) -> List[Transaction]:
    """Text matches description or tag ignoring case; tag matches also ignore accents."""
    needle = (text or "").strip().casefold()
    wanted_tag = normalize_tag(tag) if tag and tag.strip() else None
    matches = []
    for txn in transactions:
        if needle and needle not in txn.desc.casefold() and needle not in txn.tag.casefold():
            continue
        if transaction_type and txn.type != transaction_type:
            continue
        if wanted_tag and normalize_tag(txn.tag) != wanted_tag:
            continue
        matches.append(txn)
    return matches


def paginate(
    items: Sequence[Transaction], page: int, page_size: int = MOVEMENTS_PAGE_SIZE
) -> List[Transaction]:
    if page < 1:
        raise ValueError("Page must be 1 or greater.")
    start = (page - 1) * page_size
    return list(items[start : start + page_size])


def prepare_for_view(
    transactions: Iterable[Transaction],
    preferences: Preferences,
    *,
    display_currency: Optional[str] = None,
    today: Optional[date] = None,
) -> List[Transaction]:
    """Travel-mode filter plus optional display-currency projection."""
    prepared = apply_travel_mode(
        transactions,
        preferences.travel_mode_start,
        today=today,
        fallback=preferences.date_fallback,
    )
    if display_currency:
        prepared = project_for_display(prepared, display_currency)
    return prepared


def dashboard_summary(
    transactions: Sequence[Transaction],
    preferences: Preferences,
    *,
    display_currency: Optional[str] = None,
    policy: GoalPolicy = DEFAULT_GOAL_POLICY,
    today: Optional[date] = None,
) -> DashboardSummary:
    reference = today or date.today()
    fallback = preferences.date_fallback
    prepared = prepare_for_view(
        transactions, preferences, display_currency=display_currency, today=reference
    )

    window = Window.current_month(reference)
    current = filter_window(prepared, window, today=reference, fallback=fallback)
    previous = filter_window(prepared, window.previous_month(), today=reference, fallback=fallback)

    goal_expense = goal_relevant_expense(current, policy)
    previous_goal_expense = goal_relevant_expense(previous, policy)
    return DashboardSummary(
        month=window.start,
        totals=compute_totals(current),
        goal_expense=goal_expense,
        monthly_goal=preferences.monthly_goal,
        goal_progress=goal_progress(goal_expense, preferences.monthly_goal),
        previous_goal_expense=previous_goal_expense,
        month_over_month_change=month_over_month_change(goal_expense, previous_goal_expense),
        days_left=days_left_in_month(reference),
        top_categories=category_breakdown(
            current, top_n=DASHBOARD_TOP_CATEGORIES, policy=policy
        ),
        recent=recent_transactions(
            prepared, limit=DASHBOARD_RECENT_LIMIT, today=reference, fallback=fallback
        ),
    )


def period_stats(
    transactions: Sequence[Transaction],
    preferences: Preferences,
    year: int,
    month: Optional[int] = None,
    *,
    display_currency: Optional[str] = None,
    policy: GoalPolicy = DEFAULT_GOAL_POLICY,
    today: Optional[date] = None,
) -> PeriodStats:
    if month is not None and not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12.")
    reference = today or date.today()
    fallback = preferences.date_fallback
    prepared = prepare_for_view(
        transactions, preferences, display_currency=display_currency, today=reference
    )

    window = Window.for_month(year, month) if month is not None else Window.for_year(year)
    scoped = filter_window(prepared, window, today=reference, fallback=fallback)
    goal_expense = goal_relevant_expense(scoped, policy)
    return PeriodStats(
        year=year,
        month=month,
        totals=compute_totals(scoped),
        goal_expense=goal_expense,
        goal_progress=goal_progress(goal_expense, preferences.monthly_goal),
        categories=category_breakdown(scoped),
        year_trend=year_trend(
            prepared, year, policy=policy, today=reference, fallback=fallback
        ),
        available_years=available_years(prepared, today=reference),
    )
