"""
Store boundary for the credit engine.

Every query the engine needs lives here and returns explicit row types,
parsed from ``.values()`` rows, so engine logic never handles raw ORM
dictionaries or lazily loaded model instances.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional

from django.db.models import Count, Q

from accounts.models import Unit
from .models import (
    ActivityCatalogEntry, ActivityRecord, ActivityType, ComplianceCycle, CreditRule,
    Practitioner,
)

logger = logging.getLogger(__name__)

CapMap = Dict[str, Decimal]


@dataclass(frozen=True)
class CatalogRule:
    id: str
    activity_type: str
    conversion_ratio: Decimal
    min_hours: Optional[Decimal]
    max_hours: Optional[Decimal]
    evidence_required: bool


@dataclass(frozen=True)
class SubmissionRow:
    id: str
    practitioner_id: str
    title: str
    activity_date: date
    recorded_at: datetime
    status: str
    hours: Optional[Decimal]
    credits: Optional[Decimal]
    evidence_ref: Optional[str]
    notes: str
    catalog: Optional[CatalogRule] = None

    @property
    def activity_type(self) -> str:
        return self.catalog.activity_type if self.catalog else ActivityType.OTHER.value


@dataclass(frozen=True)
class CycleRow:
    id: int
    practitioner_id: str
    start_date: date
    end_date: date
    required_credits: Decimal
    category_caps: CapMap = field(default_factory=dict)


def parse_cap_map(raw) -> CapMap:
    """Parse a stored JSON cap map, dropping entries that are not numbers."""
    if not raw:
        return {}
    if not isinstance(raw, dict):
        logger.warning(f"Ignoring malformed category cap map: {raw!r}")
        return {}
    caps = {}
    for activity_type, cap in raw.items():
        if cap is None or isinstance(cap, bool):
            continue
        try:
            value = Decimal(str(cap))
        except (InvalidOperation, ValueError):
            logger.warning(f"Ignoring non-numeric cap {cap!r} for {activity_type}")
            continue
        if value.is_finite() and value >= 0:
            caps[str(activity_type)] = value
    return caps


def canonical_id(value) -> Optional[str]:
    """Hyphenated lowercase UUID string for ``value``, or None if it is not a UUID."""
    try:
        return str(uuid.UUID(str(value)))
    except ValueError:
        return None


# ============================================================================
# ROW PARSERS
# ============================================================================

_CATALOG_PREFIX = 'catalog_entry__'

SUBMISSION_FIELDS = (
    'id', 'practitioner_id', 'title', 'activity_date', 'created_at', 'status',
    'hours', 'credits', 'evidence_ref', 'notes', 'catalog_entry_id',
    'catalog_entry__activity_type', 'catalog_entry__conversion_ratio',
    'catalog_entry__min_hours', 'catalog_entry__max_hours',
    'catalog_entry__evidence_required',
)

CYCLE_FIELDS = (
    'id', 'practitioner_id', 'start_date', 'end_date', 'required_credits', 'category_caps',
)


def _catalog_from_row(row, prefix='') -> Optional[CatalogRule]:
    entry_id = row['catalog_entry_id'] if prefix else row['id']
    if entry_id is None:
        return None
    return CatalogRule(
        id=str(entry_id),
        activity_type=row[f'{prefix}activity_type'],
        conversion_ratio=Decimal(row[f'{prefix}conversion_ratio']),
        min_hours=row[f'{prefix}min_hours'],
        max_hours=row[f'{prefix}max_hours'],
        evidence_required=bool(row[f'{prefix}evidence_required']),
    )


def _submission_from_row(row) -> SubmissionRow:
    return SubmissionRow(
        id=str(row['id']),
        practitioner_id=str(row['practitioner_id']),
        title=row['title'],
        activity_date=row['activity_date'],
        recorded_at=row['created_at'],
        status=row['status'],
        hours=row['hours'],
        credits=row['credits'],
        evidence_ref=row['evidence_ref'],
        notes=row['notes'] or '',
        catalog=_catalog_from_row(row, _CATALOG_PREFIX),
    )


def _cycle_from_row(row) -> CycleRow:
    return CycleRow(
        id=row['id'],
        practitioner_id=str(row['practitioner_id']),
        start_date=row['start_date'],
        end_date=row['end_date'],
        required_credits=Decimal(row['required_credits']),
        category_caps=parse_cap_map(row['category_caps']),
    )


# ============================================================================
# QUERIES
# ============================================================================

def fetch_catalog_rule(entry_id) -> Optional[CatalogRule]:
    """Catalog entry by id, soft-deleted entries included."""
    row = (
        ActivityCatalogEntry.all_objects.filter(pk=entry_id)
        .values('id', 'activity_type', 'conversion_ratio', 'min_hours', 'max_hours', 'evidence_required')
        .first()
    )
    return _catalog_from_row(row) if row else None


def fetch_cycles(practitioner_ids: Iterable) -> Dict[str, List[CycleRow]]:
    """All stored cycles for the given practitioners, keyed by practitioner id."""
    cycles: Dict[str, List[CycleRow]] = {}
    rows = (
        ComplianceCycle.objects.filter(practitioner_id__in=list(practitioner_ids))
        .order_by('practitioner_id', '-start_date')
        .values(*CYCLE_FIELDS)
    )
    for row in rows:
        cycle = _cycle_from_row(row)
        cycles.setdefault(cycle.practitioner_id, []).append(cycle)
    return cycles


def fetch_cycle_for_window(practitioner_id, start: date, end: date) -> Optional[CycleRow]:
    row = (
        ComplianceCycle.objects.filter(
            practitioner_id=practitioner_id, start_date=start, end_date=end
        )
        .order_by('-id')
        .values(*CYCLE_FIELDS)
        .first()
    )
    return _cycle_from_row(row) if row else None


def fetch_active_rule_caps(on_date: date) -> CapMap:
    rule = CreditRule.get_active(on_date)
    return parse_cap_map(rule.category_caps) if rule else {}


def fetch_submissions(
    practitioner_ids: Iterable,
    start: date,
    end: date,
    activity_type: str = None,
    statuses: Iterable[str] = None,
    limit: int = None,
) -> List[SubmissionRow]:
    """
    Submissions with an activity date in [start, end] joined to their
    catalog entry, newest first.
    """
    qs = ActivityRecord.objects.filter(
        practitioner_id__in=list(practitioner_ids),
        activity_date__gte=start,
        activity_date__lte=end,
    )
    if activity_type == ActivityType.OTHER:
        qs = qs.filter(catalog_entry__isnull=True)
    elif activity_type:
        qs = qs.filter(catalog_entry__activity_type=activity_type)
    if statuses:
        qs = qs.filter(status__in=list(statuses))

    qs = qs.order_by('-activity_date', '-created_at').values(*SUBMISSION_FIELDS)
    if limit is not None:
        qs = qs[:limit]
    return [_submission_from_row(row) for row in qs]


def count_pending_by_unit(unit_ids: Iterable) -> Dict[int, int]:
    rows = (
        ActivityRecord.objects.filter(
            practitioner__unit_id__in=list(unit_ids),
            status=ActivityRecord.Status.PENDING,
        )
        .values('practitioner__unit_id')
        .annotate(total=Count('id'))
    )
    return {row['practitioner__unit_id']: row['total'] for row in rows}


def active_practitioner_ids_by_unit(unit_ids: Iterable) -> Dict[int, List[str]]:
    grouped: Dict[int, List[str]] = {unit_id: [] for unit_id in unit_ids}
    rows = Practitioner.objects.filter(
        unit_id__in=list(grouped),
        employment_status=Practitioner.EmploymentStatus.ACTIVE,
    ).values_list('unit_id', 'id')
    for unit_id, practitioner_id in rows:
        grouped[unit_id].append(str(practitioner_id))
    return grouped


def search_units(search: str = None):
    qs = Unit.objects.filter(is_active=True)
    if search:
        qs = qs.filter(Q(name__icontains=search))
    return qs.order_by('name')
