"""
Credit Compliance Engine

Resolves practitioners' current compliance cycles, aggregates effective
credits per activity type, pre-checks category caps and classifies
practitioners for unit and department dashboards.

All functions are stateless: each call reads what it needs through
``compliance.queries`` and every credit figure comes from
``calculate_effective_credits``.
"""

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field, asdict
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Tuple

from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from .config import DEFAULT_CONFIG, EngineConfig
from .credit_utils import ZERO, calculate_effective_credits, quantize_credits, to_decimal
from .models import ActivityRecord
from .queries import (
    CapMap, CycleRow, SubmissionRow,
    active_practitioner_ids_by_unit, count_pending_by_unit, fetch_active_rule_caps,
    canonical_id, fetch_cycle_for_window, fetch_cycles, fetch_submissions, search_units,
)

logger = logging.getLogger(__name__)

PERCENT = Decimal('0.01')


class CycleState(models.TextChoices):
    IN_PROGRESS = 'IN_PROGRESS', _('In Progress')
    COMPLETED = 'COMPLETED', _('Completed')
    OVERDUE = 'OVERDUE', _('Overdue')
    ENDING_SOON = 'ENDING_SOON', _('Ending Soon')


class ComplianceClass(models.TextChoices):
    COMPLIANT = 'COMPLIANT', _('Compliant')
    AT_RISK = 'AT_RISK', _('At Risk')
    NON_COMPLIANT = 'NON_COMPLIANT', _('Non-Compliant')


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass(frozen=True)
class CycleStatus:
    practitioner_id: str
    cycle_id: int
    start_date: date
    end_date: date
    required_credits: Decimal
    earned_credits: Decimal
    completion_percent: Decimal
    days_remaining: int
    status: str
    category_caps: CapMap = field(default_factory=dict)

    @property
    def completion_ratio(self) -> Decimal:
        return completion_ratio(self.earned_credits, self.required_credits)

    def as_dict(self):
        return asdict(self)


@dataclass(frozen=True)
class CreditSummary:
    activity_type: str
    total_credits: Decimal
    activity_count: int
    cap: Optional[Decimal] = None
    remaining: Optional[Decimal] = None

    def as_dict(self):
        return asdict(self)


@dataclass(frozen=True)
class CreditHistoryEntry:
    id: str
    title: str
    activity_type: str
    credits: Decimal
    activity_date: date
    recorded_at: object
    status: str
    notes: str

    def as_dict(self):
        return asdict(self)


@dataclass(frozen=True)
class CategoryLimitResult:
    valid: bool
    cap: Optional[Decimal] = None
    current_total: Optional[Decimal] = None
    remaining: Optional[Decimal] = None
    message: str = ''

    def as_dict(self):
        return asdict(self)


@dataclass(frozen=True)
class ComplianceStatistics:
    total: int
    classified: int
    unclassified: int
    compliant: int
    at_risk: int
    non_compliant: int
    average_completion: Decimal

    def as_dict(self):
        return asdict(self)


@dataclass(frozen=True)
class UnitComparisonRow:
    unit_id: int
    unit_name: str
    practitioner_count: int
    classified: int
    compliant: int
    at_risk: int
    non_compliant: int
    compliance_rate: Decimal
    pending_submissions: int


@dataclass(frozen=True)
class UnitComparisonPage:
    items: List[UnitComparisonRow]
    page: int
    page_size: int
    total_items: int
    total_pages: int

    def as_dict(self):
        return asdict(self)


# ============================================================================
# AGGREGATION HELPERS
# ============================================================================

def completion_ratio(earned: Decimal, required: Decimal) -> Decimal:
    """earned / required, floored at 0. Nothing required counts as complete."""
    if required <= 0:
        return Decimal('1')
    return max(Decimal('0'), earned / required)


def sum_effective_credits(rows: Iterable[SubmissionRow]) -> Decimal:
    return sum((calculate_effective_credits(row, row.catalog) for row in rows), ZERO)


def summarize_by_type(rows: Iterable[SubmissionRow], caps: CapMap) -> List[CreditSummary]:
    """
    Group submissions by activity type. Every row is counted; only
    effective credits are summed.
    """
    totals: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    counts: Dict[str, int] = defaultdict(int)

    for row in rows:
        totals[row.activity_type] += calculate_effective_credits(row, row.catalog)
        counts[row.activity_type] += 1

    summaries = []
    for activity_type, total in totals.items():
        cap = caps.get(activity_type)
        summaries.append(CreditSummary(
            activity_type=activity_type,
            total_credits=quantize_credits(total),
            activity_count=counts[activity_type],
            cap=cap,
            remaining=quantize_credits(max(ZERO, cap - total)) if cap is not None else None,
        ))

    summaries.sort(key=lambda s: (-s.total_credits, s.activity_type))
    return summaries


def resolve_category_caps(practitioner_id, cycle_start: date, cycle_end: date) -> CapMap:
    """
    Caps for a cycle window: the practitioner's stored cycle with exactly
    this window, else the credit rule in force at the window start.
    """
    cycle = fetch_cycle_for_window(practitioner_id, cycle_start, cycle_end)
    if cycle is not None:
        return cycle.category_caps
    return fetch_active_rule_caps(cycle_start)


# ============================================================================
# CYCLE RESOLVER
# ============================================================================

def select_current_cycle(
    cycles: Iterable[CycleRow], today: date, config: EngineConfig = DEFAULT_CONFIG
) -> Optional[CycleRow]:
    """
    The cycle whose window contains ``today``; the latest start wins if
    several do. Outside every window the gap policy decides.
    """
    cycles = list(cycles)
    containing = [c for c in cycles if c.start_date <= today <= c.end_date]
    if containing:
        return max(containing, key=lambda c: (c.start_date, c.id))

    if config.cycle_gap_policy == 'latest_ended':
        ended = [c for c in cycles if c.end_date < today]
        if ended:
            return max(ended, key=lambda c: (c.end_date, c.start_date, c.id))

    return None


def build_cycle_status(
    cycle: CycleRow, earned: Decimal, today: date, config: EngineConfig = DEFAULT_CONFIG
) -> CycleStatus:
    days_remaining = max(0, (cycle.end_date - today).days)
    ratio = completion_ratio(earned, cycle.required_credits)

    if ratio >= 1:
        status = CycleState.COMPLETED
    elif today > cycle.end_date:
        status = CycleState.OVERDUE
    elif days_remaining <= config.ending_soon_days:
        status = CycleState.ENDING_SOON
    else:
        status = CycleState.IN_PROGRESS

    return CycleStatus(
        practitioner_id=cycle.practitioner_id,
        cycle_id=cycle.id,
        start_date=cycle.start_date,
        end_date=cycle.end_date,
        required_credits=cycle.required_credits,
        earned_credits=quantize_credits(earned),
        completion_percent=(ratio * 100).quantize(PERCENT, rounding=ROUND_HALF_UP),
        days_remaining=days_remaining,
        status=status.value,
        category_caps=cycle.category_caps,
    )


def distinct_ids(practitioner_ids: Iterable) -> List[str]:
    """
    Deduplicate practitioner ids by the practitioner they name. UUIDs are
    compared in canonical form; malformed values are kept as given so they
    still count towards totals.
    """
    return list(dict.fromkeys(canonical_id(value) or str(value) for value in practitioner_ids))


def get_current_cycle(
    practitioner_id, today: date = None, config: EngineConfig = DEFAULT_CONFIG
) -> Optional[CycleStatus]:
    """
    Current cycle for a practitioner with earned credits and derived status.

    Returns None when no cycle applies; callers treat that as "no active
    obligation", not as an error.
    """
    today = today or timezone.localdate()
    pid = canonical_id(practitioner_id)
    if pid is None:
        logger.warning(f"Ignoring malformed practitioner id {practitioner_id!r}")
        return None

    cycles = fetch_cycles([pid]).get(pid, [])
    cycle = select_current_cycle(cycles, today, config)
    if cycle is None:
        logger.debug(f"No current cycle for practitioner {practitioner_id} on {today}")
        return None

    earned = get_total_effective_credits(pid, cycle.start_date, cycle.end_date)
    return build_cycle_status(cycle, earned, today, config)


# ============================================================================
# COMPLIANCE AGGREGATOR
# ============================================================================

def get_total_effective_credits(practitioner_id, start: date, end: date) -> Decimal:
    rows = fetch_submissions([practitioner_id], start, end, statuses=[ActivityRecord.Status.APPROVED])
    return quantize_credits(sum_effective_credits(rows))


def get_credit_summary_by_type(practitioner_id, cycle_start: date, cycle_end: date) -> List[CreditSummary]:
    rows = fetch_submissions([practitioner_id], cycle_start, cycle_end)
    caps = resolve_category_caps(practitioner_id, cycle_start, cycle_end)
    return summarize_by_type(rows, caps)


def get_credit_history(
    practitioner_id,
    start: date,
    end: date,
    limit: int = None,
    config: EngineConfig = DEFAULT_CONFIG,
) -> List[CreditHistoryEntry]:
    """
    Per-record credit history. ``credits`` is always the effective value:
    a record missing required evidence shows 0 here like everywhere else.
    """
    limit = config.history_limit if limit is None else limit
    rows = fetch_submissions([practitioner_id], start, end, limit=limit)
    return [
        CreditHistoryEntry(
            id=row.id,
            title=row.title,
            activity_type=row.activity_type,
            credits=calculate_effective_credits(row, row.catalog),
            activity_date=row.activity_date,
            recorded_at=row.recorded_at,
            status=row.status,
            notes=row.notes,
        )
        for row in rows
    ]


# ============================================================================
# CATEGORY LIMIT VALIDATOR
# ============================================================================

def validate_category_limit(
    practitioner_id,
    activity_type: str,
    proposed_credits,
    cycle_start: date,
    cycle_end: date,
) -> CategoryLimitResult:
    """
    Advisory pre-check: would ``proposed_credits`` push the category past
    its cap for this window? ``remaining`` is the headroom before the
    addition. Nothing is persisted.
    """
    proposed = to_decimal(proposed_credits, 'proposed_credits')
    cap = resolve_category_caps(practitioner_id, cycle_start, cycle_end).get(activity_type)
    if cap is None:
        return CategoryLimitResult(valid=True)

    rows = fetch_submissions(
        [practitioner_id], cycle_start, cycle_end,
        activity_type=activity_type, statuses=[ActivityRecord.Status.APPROVED],
    )
    current = quantize_credits(sum_effective_credits(rows))
    remaining = quantize_credits(max(ZERO, cap - current))

    if current + proposed > cap:
        return CategoryLimitResult(
            valid=False,
            cap=cap,
            current_total=current,
            remaining=remaining,
            message=(
                f"Credit cap exceeded for {activity_type}: "
                f"current {current}/{cap}, adding {proposed}"
            ),
        )

    return CategoryLimitResult(valid=True, cap=cap, current_total=current, remaining=remaining)


# ============================================================================
# COMPLIANCE STATISTICS
# ============================================================================

def classify_compliance(
    cycle_status: CycleStatus, today: date, config: EngineConfig = DEFAULT_CONFIG
) -> ComplianceClass:
    """
    Deterministic three-way classification of a resolved cycle.

    Non-compliant covers overdue cycles, progress below
    ``pace_tolerance`` times the expected linear pace, and ending-soon
    cycles under ``at_risk_min_ratio``. Everything else short of the
    requirement is at risk.

    With ``at_risk_completion_threshold`` set, open cycles are split on
    that completion ratio alone and the pace checks are skipped.
    """
    ratio = cycle_status.completion_ratio
    if ratio >= 1:
        return ComplianceClass.COMPLIANT
    if today > cycle_status.end_date:
        return ComplianceClass.NON_COMPLIANT

    if config.at_risk_completion_threshold is not None:
        if ratio < config.at_risk_completion_threshold:
            return ComplianceClass.NON_COMPLIANT
        return ComplianceClass.AT_RISK

    total_days = (cycle_status.end_date - cycle_status.start_date).days
    if total_days > 0:
        elapsed = min(max((today - cycle_status.start_date).days, 0), total_days)
        expected = Decimal(elapsed) / Decimal(total_days)
        if ratio < expected * config.pace_tolerance:
            return ComplianceClass.NON_COMPLIANT

    if cycle_status.days_remaining <= config.ending_soon_days and ratio < config.at_risk_min_ratio:
        return ComplianceClass.NON_COMPLIANT

    return ComplianceClass.AT_RISK


def evaluate_practitioners(
    practitioner_ids: Iterable, today: date = None, config: EngineConfig = DEFAULT_CONFIG
) -> Dict[str, Tuple[CycleStatus, ComplianceClass]]:
    """
    Resolve and classify many practitioners with one cycle query and one
    submission query. Results are keyed by canonical id; malformed ids and
    practitioners without a current cycle are omitted.
    """
    today = today or timezone.localdate()
    ids = [pid for pid in distinct_ids(practitioner_ids) if canonical_id(pid) == pid]
    if not ids:
        return {}

    cycles_by_practitioner = fetch_cycles(ids)
    current: Dict[str, CycleRow] = {}
    for pid in ids:
        cycle = select_current_cycle(cycles_by_practitioner.get(pid, []), today, config)
        if cycle is not None:
            current[pid] = cycle
    if not current:
        return {}

    window_start = min(c.start_date for c in current.values())
    window_end = max(c.end_date for c in current.values())
    rows_by_practitioner: Dict[str, List[SubmissionRow]] = defaultdict(list)
    for row in fetch_submissions(
        current.keys(), window_start, window_end, statuses=[ActivityRecord.Status.APPROVED]
    ):
        rows_by_practitioner[row.practitioner_id].append(row)

    results = {}
    for pid, cycle in current.items():
        in_window = [
            row for row in rows_by_practitioner[pid]
            if cycle.start_date <= row.activity_date <= cycle.end_date
        ]
        status = build_cycle_status(cycle, sum_effective_credits(in_window), today, config)
        results[pid] = (status, classify_compliance(status, today, config))
    return results


def get_compliance_statistics(
    practitioner_ids: Iterable, today: date = None, config: EngineConfig = DEFAULT_CONFIG
) -> ComplianceStatistics:
    """
    Batch classification. ``total`` is the number of distinct ids supplied;
    only practitioners with a resolvable cycle are classified, and
    ``average_completion`` is the mean completion percentage over them.
    """
    ids = distinct_ids(practitioner_ids)
    evaluations = evaluate_practitioners(ids, today, config)

    counts = {cls: 0 for cls in ComplianceClass}
    ratio_total = Decimal('0')
    for status, classification in evaluations.values():
        counts[classification] += 1
        ratio_total += status.completion_ratio

    classified = len(evaluations)
    average = (ratio_total * 100 / classified) if classified else Decimal('0')

    stats = ComplianceStatistics(
        total=len(ids),
        classified=classified,
        unclassified=len(ids) - classified,
        compliant=counts[ComplianceClass.COMPLIANT],
        at_risk=counts[ComplianceClass.AT_RISK],
        non_compliant=counts[ComplianceClass.NON_COMPLIANT],
        average_completion=average.quantize(PERCENT, rounding=ROUND_HALF_UP),
    )
    logger.info(
        f"Compliance statistics: {stats.classified}/{stats.total} classified, "
        f"{stats.compliant} compliant, {stats.at_risk} at risk, {stats.non_compliant} non-compliant"
    )
    return stats


# ============================================================================
# UNIT COMPARISON REPORT
# ============================================================================

def get_unit_comparison_page(
    page: int = 1,
    page_size: int = 20,
    search: str = None,
    today: date = None,
    config: EngineConfig = DEFAULT_CONFIG,
) -> UnitComparisonPage:
    """
    One page of per-unit compliance figures. Totals are counted
    independently of the page, so a page past the end has no items but
    still reports ``total_items`` and ``total_pages``.
    """
    page = max(1, int(page))
    page_size = max(1, int(page_size))

    units = search_units(search)
    total_items = units.count()
    total_pages = math.ceil(total_items / page_size)

    offset = (page - 1) * page_size
    page_units = list(units[offset:offset + page_size]) if offset < total_items else []
    if not page_units:
        return UnitComparisonPage([], page, page_size, total_items, total_pages)

    unit_ids = [unit.id for unit in page_units]
    practitioners = active_practitioner_ids_by_unit(unit_ids)
    pending = count_pending_by_unit(unit_ids)
    evaluations = evaluate_practitioners(
        [pid for pids in practitioners.values() for pid in pids], today, config
    )

    items = []
    for unit in page_units:
        classes = [evaluations[pid][1] for pid in practitioners[unit.id] if pid in evaluations]
        compliant = classes.count(ComplianceClass.COMPLIANT)
        rate = Decimal(compliant * 100) / len(classes) if classes else Decimal('0')
        items.append(UnitComparisonRow(
            unit_id=unit.id,
            unit_name=unit.name,
            practitioner_count=len(practitioners[unit.id]),
            classified=len(classes),
            compliant=compliant,
            at_risk=classes.count(ComplianceClass.AT_RISK),
            non_compliant=classes.count(ComplianceClass.NON_COMPLIANT),
            compliance_rate=rate.quantize(PERCENT, rounding=ROUND_HALF_UP),
            pending_submissions=pending.get(unit.id, 0),
        ))

    return UnitComparisonPage(items, page, page_size, total_items, total_pages)
