import json
import uuid
from datetime import date, datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from io import StringIO
from types import SimpleNamespace
from unittest import mock

from django.core.cache import cache
from django.core.exceptions import ImproperlyConfigured, ValidationError
from django.core.management import call_command
from django.db import DatabaseError
from django.test import SimpleTestCase, TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APIClient

from accounts.models import Unit, User
from core.errors import InvalidTransitionError, ResourceNotFoundError
from .audit import record_audit_event
from .config import DEFAULT_CONFIG, EngineConfig
from .credit_engine import (
    ComplianceClass, CycleState, build_cycle_status, classify_compliance,
    get_compliance_statistics, get_credit_history, get_credit_summary_by_type,
    get_current_cycle, get_total_effective_credits, get_unit_comparison_page,
    select_current_cycle, summarize_by_type, validate_category_limit,
)
from .credit_utils import (
    calculate_credits, calculate_effective_credits, convert_hours, is_evidence_satisfied,
)
from .models import (
    ActivityCatalogEntry, ActivityRecord, ActivityType, AuditLog, ComplianceCycle,
    CreditRule, Practitioner, add_years,
)
from .queries import CatalogRule, CycleRow, SubmissionRow, fetch_catalog_rule, parse_cap_map
from .workflow import (
    approve_submission, bulk_approve, bulk_revoke, can_transition, delete_pending_submission,
    reject_submission, revoke_submission,
)

Status = ActivityRecord.Status

TODAY = date(2025, 7, 1)
CYCLE_START = date(2023, 1, 1)
CYCLE_END = date(2027, 12, 31)


# ============================================================================
# FIXTURE HELPERS
# ============================================================================

def make_unit(name='General Hospital', **kwargs):
    return Unit.objects.create(name=name, **kwargs)


def make_practitioner(unit, full_name='Dr. Example', **kwargs):
    return Practitioner.objects.create(full_name=full_name, unit=unit, **kwargs)


def make_entry(activity_type=ActivityType.COURSE, ratio='1', evidence_required=False, **kwargs):
    return ActivityCatalogEntry.objects.create(
        name=kwargs.pop('name', f'{activity_type} entry'),
        activity_type=activity_type,
        conversion_ratio=Decimal(ratio),
        evidence_required=evidence_required,
        **kwargs
    )


def make_record(practitioner, entry=None, status=Status.APPROVED, activity_date=date(2024, 3, 1), **kwargs):
    return ActivityRecord.objects.create(
        practitioner=practitioner,
        catalog_entry=entry,
        title=kwargs.pop('title', 'Activity'),
        activity_date=activity_date,
        status=status,
        **kwargs
    )


def make_cycle(practitioner, start=CYCLE_START, end=CYCLE_END, required='120', caps=None):
    return ComplianceCycle.objects.create(
        practitioner=practitioner,
        start_date=start,
        end_date=end,
        required_credits=Decimal(required),
        category_caps=caps or {},
    )


def cycle_row(start=CYCLE_START, end=CYCLE_END, required='100', cycle_id=1, caps=None):
    return CycleRow(
        id=cycle_id, practitioner_id='p1', start_date=start, end_date=end,
        required_credits=Decimal(required), category_caps=caps or {},
    )


# ============================================================================
# PURE CREDIT RULES
# ============================================================================

class CreditCalculatorTestCase(SimpleTestCase):

    def test_hours_times_ratio(self):
        self.assertEqual(convert_hours(Decimal('10'), Decimal('0.5')), Decimal('5.00'))

    def test_hours_above_max_are_clamped(self):
        self.assertEqual(convert_hours(50, 1, max_hours=40), Decimal('40.00'))

    def test_hours_below_min_earn_nothing(self):
        self.assertEqual(convert_hours(2, 1, min_hours=3), Decimal('0.00'))

    def test_rounds_half_up_to_two_places(self):
        self.assertEqual(convert_hours(1, Decimal('0.125')), Decimal('0.13'))

    def test_never_negative(self):
        self.assertEqual(convert_hours(0, 2), Decimal('0.00'))

    def test_missing_entry_or_hours(self):
        rule = CatalogRule('e1', ActivityType.COURSE, Decimal('2'), None, None, False)
        self.assertEqual(calculate_credits(None, 5), Decimal('0'))
        self.assertEqual(calculate_credits(rule, None), Decimal('0'))
        self.assertEqual(calculate_credits(rule, 5), Decimal('10.00'))

    def test_non_numeric_hours_raise_type_error(self):
        for value in ('ten', True, float('nan'), None):
            with self.assertRaises(TypeError):
                convert_hours(value, 1)

    def test_float_hours_are_accepted(self):
        self.assertEqual(convert_hours(1.5, 2), Decimal('3.00'))


class EvidenceGateTestCase(SimpleTestCase):

    def test_not_required_always_passes(self):
        self.assertTrue(is_evidence_satisfied(False, None))
        self.assertTrue(is_evidence_satisfied(None, ''))

    def test_required_needs_non_blank_string(self):
        self.assertFalse(is_evidence_satisfied(True, None))
        self.assertFalse(is_evidence_satisfied(True, '   '))
        self.assertFalse(is_evidence_satisfied(True, 42))
        self.assertTrue(is_evidence_satisfied(True, 'evidence/cert.pdf'))


class EffectiveCreditTestCase(SimpleTestCase):

    def setUp(self):
        self.entry = SimpleNamespace(
            conversion_ratio=Decimal('1.5'), min_hours=None, max_hours=None, evidence_required=True
        )

    def submission(self, **kwargs):
        values = {'status': Status.APPROVED, 'credits': None, 'hours': None, 'evidence_ref': 'cert.pdf'}
        values.update(kwargs)
        return SimpleNamespace(**values)

    def test_only_approved_submissions_count(self):
        for status in (Status.PENDING, Status.REJECTED, Status.REVOKED):
            self.assertEqual(
                calculate_effective_credits(self.submission(status=status, credits=Decimal('8')), self.entry),
                Decimal('0')
            )

    def test_missing_required_evidence_counts_zero(self):
        record = self.submission(credits=Decimal('8'), evidence_ref='')
        self.assertEqual(calculate_effective_credits(record, self.entry), Decimal('0'))

    def test_stored_credits_win_over_hours(self):
        record = self.submission(credits=Decimal('8'), hours=Decimal('100'))
        self.assertEqual(calculate_effective_credits(record, self.entry), Decimal('8.00'))

    def test_hours_converted_when_no_stored_credits(self):
        record = self.submission(hours=Decimal('4'))
        self.assertEqual(calculate_effective_credits(record, self.entry), Decimal('6.00'))

    def test_ad_hoc_uses_ratio_one_without_evidence_gate(self):
        record = self.submission(hours=Decimal('3.333'), evidence_ref=None)
        self.assertEqual(calculate_effective_credits(record, None), Decimal('3.33'))

    def test_no_credits_and_no_hours(self):
        self.assertEqual(calculate_effective_credits(self.submission(), self.entry), Decimal('0'))


class CapMapTestCase(SimpleTestCase):

    def test_zero_cap_is_kept(self):
        self.assertEqual(parse_cap_map({'RESEARCH': 0}), {'RESEARCH': Decimal('0')})

    def test_invalid_entries_are_dropped(self):
        caps = parse_cap_map({'COURSE': '30', 'REPORT': -1, 'CONFERENCE': 'lots', 'OTHER': None})
        self.assertEqual(caps, {'COURSE': Decimal('30')})

    def test_non_mapping_is_empty(self):
        self.assertEqual(parse_cap_map(['COURSE']), {})
        self.assertEqual(parse_cap_map(None), {})


class CycleSelectionTestCase(SimpleTestCase):

    def test_cycle_containing_today(self):
        old = cycle_row(date(2018, 1, 1), date(2022, 12, 31), cycle_id=1)
        current = cycle_row(cycle_id=2)
        self.assertEqual(select_current_cycle([old, current], TODAY), current)

    def test_overlapping_cycles_prefer_latest_start(self):
        early = cycle_row(date(2022, 1, 1), date(2026, 12, 31), cycle_id=1)
        late = cycle_row(date(2024, 1, 1), date(2028, 12, 31), cycle_id=2)
        self.assertEqual(select_current_cycle([late, early], TODAY), late)

    def test_gap_returns_none_by_default(self):
        ended = cycle_row(date(2019, 1, 1), date(2024, 12, 31))
        self.assertIsNone(select_current_cycle([ended], TODAY))

    def test_gap_with_latest_ended_policy(self):
        config = EngineConfig(cycle_gap_policy='latest_ended')
        older = cycle_row(date(2014, 1, 1), date(2018, 12, 31), cycle_id=1)
        ended = cycle_row(date(2019, 1, 1), date(2024, 12, 31), cycle_id=2)
        future = cycle_row(date(2026, 1, 1), date(2030, 12, 31), cycle_id=3)
        self.assertEqual(select_current_cycle([older, ended, future], TODAY, config), ended)


class CycleStatusTestCase(SimpleTestCase):

    def test_completed(self):
        status = build_cycle_status(cycle_row(), Decimal('100'), TODAY)
        self.assertEqual(status.status, CycleState.COMPLETED)
        self.assertEqual(status.completion_percent, Decimal('100.00'))

    def test_in_progress(self):
        status = build_cycle_status(cycle_row(), Decimal('33.333'), TODAY)
        self.assertEqual(status.status, CycleState.IN_PROGRESS)
        self.assertEqual(status.earned_credits, Decimal('33.33'))
        self.assertEqual(status.completion_percent, Decimal('33.33'))
        self.assertEqual(status.days_remaining, (CYCLE_END - TODAY).days)

    def test_ending_soon(self):
        row = cycle_row(date(2020, 8, 1), TODAY + timedelta(days=30))
        self.assertEqual(build_cycle_status(row, Decimal('10'), TODAY).status, CycleState.ENDING_SOON)

    def test_overdue_has_no_days_remaining(self):
        row = cycle_row(date(2019, 1, 1), date(2024, 12, 31))
        status = build_cycle_status(row, Decimal('10'), TODAY)
        self.assertEqual(status.status, CycleState.OVERDUE)
        self.assertEqual(status.days_remaining, 0)

    def test_nothing_required_is_complete(self):
        status = build_cycle_status(cycle_row(required='0'), Decimal('0'), TODAY)
        self.assertEqual(status.status, CycleState.COMPLETED)


class ClassificationTestCase(SimpleTestCase):

    def classify(self, earned, row=None, config=DEFAULT_CONFIG):
        status = build_cycle_status(row or cycle_row(), Decimal(earned), TODAY, config)
        return classify_compliance(status, TODAY, config)

    def test_met_requirement_is_compliant(self):
        self.assertEqual(self.classify('100'), ComplianceClass.COMPLIANT)
        self.assertEqual(self.classify('140'), ComplianceClass.COMPLIANT)

    def test_on_reasonable_pace_is_at_risk(self):
        # Half way through the cycle; 40% done is above half the expected pace
        self.assertEqual(self.classify('40'), ComplianceClass.AT_RISK)

    def test_far_behind_pace_is_non_compliant(self):
        self.assertEqual(self.classify('10'), ComplianceClass.NON_COMPLIANT)

    def test_overdue_is_non_compliant(self):
        row = cycle_row(date(2019, 1, 1), date(2024, 12, 31))
        self.assertEqual(self.classify('99', row), ComplianceClass.NON_COMPLIANT)

    def test_start_of_cycle_is_at_risk(self):
        row = cycle_row(TODAY, TODAY + timedelta(days=1825))
        self.assertEqual(self.classify('0', row), ComplianceClass.AT_RISK)

    def test_ending_soon_minimum_ratio(self):
        row = cycle_row(date(2020, 8, 1), TODAY + timedelta(days=10))
        self.assertEqual(self.classify('90', row), ComplianceClass.AT_RISK)
        strict = EngineConfig(at_risk_min_ratio=Decimal('0.95'))
        self.assertEqual(self.classify('90', row, strict), ComplianceClass.NON_COMPLIANT)

    def test_completion_threshold_replaces_pace(self):
        config = EngineConfig(at_risk_completion_threshold=Decimal('0.7'))
        row = cycle_row(TODAY, TODAY + timedelta(days=1825))
        self.assertEqual(self.classify('0', row, config), ComplianceClass.NON_COMPLIANT)
        self.assertEqual(self.classify('69.99', config=config), ComplianceClass.NON_COMPLIANT)
        self.assertEqual(self.classify('70', config=config), ComplianceClass.AT_RISK)
        self.assertEqual(self.classify('100', config=config), ComplianceClass.COMPLIANT)

        overdue = cycle_row(date(2019, 1, 1), date(2024, 12, 31))
        self.assertEqual(self.classify('90', overdue, config), ComplianceClass.NON_COMPLIANT)


class SummarizeTestCase(SimpleTestCase):

    def row(self, status=Status.APPROVED, credits=None, catalog=None, evidence_ref='x'):
        return SubmissionRow(
            id=str(uuid.uuid4()), practitioner_id='p1', title='t', activity_date=TODAY,
            recorded_at=None, status=status, hours=None, credits=credits,
            evidence_ref=evidence_ref, notes='', catalog=catalog,
        )

    def test_counts_all_rows_and_sums_effective_credits(self):
        course = CatalogRule('c', ActivityType.COURSE, Decimal('1'), None, None, True)
        rows = [
            self.row(credits=Decimal('5'), catalog=course),
            self.row(credits=Decimal('9'), catalog=course, evidence_ref=None),
            self.row(status=Status.PENDING, credits=Decimal('9'), catalog=course),
            self.row(credits=Decimal('7')),
        ]
        summary = summarize_by_type(rows, {'COURSE': Decimal('4')})

        self.assertEqual([s.activity_type for s in summary], ['OTHER', 'COURSE'])
        other, course_summary = summary
        self.assertEqual((other.total_credits, other.activity_count, other.cap), (Decimal('7'), 1, None))
        self.assertEqual(course_summary.total_credits, Decimal('5.00'))
        self.assertEqual(course_summary.activity_count, 3)
        self.assertEqual(course_summary.cap, Decimal('4'))
        self.assertEqual(course_summary.remaining, Decimal('0.00'))

    def test_ties_ordered_by_type(self):
        rows = [
            self.row(credits=Decimal('3'), catalog=CatalogRule('r', ActivityType.RESEARCH, 1, None, None, False)),
            self.row(credits=Decimal('3'), catalog=CatalogRule('c', ActivityType.CONFERENCE, 1, None, None, False)),
        ]
        self.assertEqual(
            [s.activity_type for s in summarize_by_type(rows, {})], ['CONFERENCE', 'RESEARCH']
        )


class EngineConfigTestCase(SimpleTestCase):

    def test_defaults(self):
        self.assertEqual(DEFAULT_CONFIG.ending_soon_days, 30)
        self.assertEqual(DEFAULT_CONFIG.pace_tolerance, Decimal('0.5'))
        self.assertEqual(DEFAULT_CONFIG.cycle_gap_policy, 'none')
        self.assertEqual(DEFAULT_CONFIG.history_limit, 50)

    def test_unknown_gap_policy_rejected(self):
        with self.assertRaises(ImproperlyConfigured):
            EngineConfig(cycle_gap_policy='carry_forward')

    @override_settings(COMPLIANCE_ENGINE={'ENDING_SOON_DAYS': 60, 'CYCLE_GAP_POLICY': 'latest_ended'})
    def test_from_settings(self):
        config = EngineConfig.from_settings()
        self.assertEqual(config.ending_soon_days, 60)
        self.assertEqual(config.cycle_gap_policy, 'latest_ended')
        self.assertEqual(config.history_limit, 50)
        self.assertIsNone(config.at_risk_completion_threshold)

    @override_settings(COMPLIANCE_ENGINE={
        'AT_RISK_COMPLETION_THRESHOLD': '0.7', 'DEFAULT_REQUIRED_CREDITS': '80', 'DEFAULT_CYCLE_YEARS': 3,
    })
    def test_threshold_and_cycle_defaults_from_settings(self):
        config = EngineConfig.from_settings()
        self.assertEqual(config.at_risk_completion_threshold, Decimal('0.7'))
        self.assertEqual(config.default_required_credits, Decimal('80'))
        self.assertEqual(config.default_cycle_years, 3)

    def test_negative_threshold_rejected(self):
        with self.assertRaises(ImproperlyConfigured):
            EngineConfig(at_risk_completion_threshold=Decimal('-0.1'))


class DateHelperTestCase(SimpleTestCase):

    def test_add_years_handles_leap_day(self):
        self.assertEqual(add_years(date(2024, 2, 29), 1), date(2025, 2, 28))
        self.assertEqual(add_years(date(2023, 1, 1), 5), date(2028, 1, 1))


# ============================================================================
# ENGINE OVER THE DATABASE
# ============================================================================

class ComplianceEngineTestCase(TestCase):

    def setUp(self):
        self.unit = make_unit()
        self.practitioner = make_practitioner(self.unit)
        self.course = make_entry(ActivityType.COURSE)
        self.conference = make_entry(ActivityType.CONFERENCE, evidence_required=True)
        make_cycle(self.practitioner, caps={'CONFERENCE': 4, 'RESEARCH': 0})

        make_record(self.practitioner, self.course, hours=Decimal('10'), activity_date=date(2024, 5, 1),
                    title='Course')
        make_record(self.practitioner, self.conference, credits=Decimal('5'), evidence_ref='cert.pdf',
                    activity_date=date(2024, 4, 1), title='Conference with evidence')
        make_record(self.practitioner, self.conference, credits=Decimal('7'), evidence_ref='',
                    activity_date=date(2024, 3, 1), title='Conference without evidence')
        make_record(self.practitioner, self.course, status=Status.PENDING, credits=Decimal('20'),
                    activity_date=date(2024, 2, 1))
        make_record(self.practitioner, self.course, status=Status.REJECTED, credits=Decimal('20'),
                    activity_date=date(2024, 1, 1))
        make_record(self.practitioner, hours=Decimal('3'), activity_date=date(2023, 6, 1), title='Ad hoc')
        make_record(self.practitioner, self.course, credits=Decimal('50'), activity_date=date(2022, 6, 1))

    def test_current_cycle_counts_only_effective_credits(self):
        cycle = get_current_cycle(self.practitioner.pk, TODAY)

        self.assertEqual(cycle.earned_credits, Decimal('18.00'))
        self.assertEqual(cycle.required_credits, Decimal('120'))
        self.assertEqual(cycle.completion_percent, Decimal('15.00'))
        self.assertEqual(cycle.status, CycleState.IN_PROGRESS)
        self.assertEqual(cycle.days_remaining, (CYCLE_END - TODAY).days)
        self.assertEqual(cycle.category_caps['CONFERENCE'], Decimal('4'))

    def test_no_cycle_returns_none(self):
        other = make_practitioner(self.unit, 'Dr. No Cycle')
        self.assertIsNone(get_current_cycle(other.pk, TODAY))

    def test_current_cycle_accepts_any_uuid_spelling(self):
        for spelling in (str(self.practitioner.pk).upper(), self.practitioner.pk.hex):
            cycle = get_current_cycle(spelling, TODAY)
            self.assertEqual(cycle.practitioner_id, str(self.practitioner.pk))
            self.assertEqual(cycle.earned_credits, Decimal('18.00'))

    def test_malformed_id_has_no_cycle(self):
        self.assertIsNone(get_current_cycle('not-a-uuid', TODAY))

    def test_total_effective_credits(self):
        self.assertEqual(
            get_total_effective_credits(self.practitioner.pk, CYCLE_START, CYCLE_END), Decimal('18.00')
        )

    def test_summary_by_type(self):
        summary = {s.activity_type: s for s in get_credit_summary_by_type(
            self.practitioner.pk, CYCLE_START, CYCLE_END
        )}

        self.assertEqual(set(summary), {'COURSE', 'CONFERENCE', 'OTHER'})
        self.assertEqual(summary['COURSE'].total_credits, Decimal('10.00'))
        self.assertEqual(summary['COURSE'].activity_count, 3)
        self.assertIsNone(summary['COURSE'].cap)
        self.assertEqual(summary['CONFERENCE'].total_credits, Decimal('5.00'))
        self.assertEqual(summary['CONFERENCE'].activity_count, 2)
        self.assertEqual(summary['CONFERENCE'].remaining, Decimal('0.00'))
        self.assertEqual(summary['OTHER'].total_credits, Decimal('3.00'))

    def test_history_reports_effective_credits_newest_first(self):
        history = get_credit_history(self.practitioner.pk, CYCLE_START, CYCLE_END)

        self.assertEqual(len(history), 6)
        self.assertEqual(history[0].title, 'Course')
        dates = [entry.activity_date for entry in history]
        self.assertEqual(dates, sorted(dates, reverse=True))

        missing_evidence = next(e for e in history if e.title == 'Conference without evidence')
        self.assertEqual(missing_evidence.credits, Decimal('0'))
        self.assertEqual(sum(e.credits for e in history), Decimal('18.00'))

    def test_history_limit(self):
        self.assertEqual(len(get_credit_history(self.practitioner.pk, CYCLE_START, CYCLE_END, limit=2)), 2)
        config = EngineConfig(history_limit=1)
        self.assertEqual(len(get_credit_history(self.practitioner.pk, CYCLE_START, CYCLE_END, config=config)), 1)

    def test_category_without_cap_is_valid(self):
        result = validate_category_limit(self.practitioner.pk, 'COURSE', Decimal('500'), CYCLE_START, CYCLE_END)
        self.assertTrue(result.valid)
        self.assertIsNone(result.cap)
        self.assertIsNone(result.remaining)

    def test_category_over_cap(self):
        result = validate_category_limit(self.practitioner.pk, 'CONFERENCE', 1, CYCLE_START, CYCLE_END)
        self.assertFalse(result.valid)
        self.assertEqual(result.cap, Decimal('4'))
        self.assertEqual(result.current_total, Decimal('5.00'))
        self.assertEqual(result.remaining, Decimal('0.00'))
        self.assertIn('CONFERENCE', result.message)

    def test_zero_cap_is_enforced(self):
        self.assertFalse(
            validate_category_limit(self.practitioner.pk, 'RESEARCH', 1, CYCLE_START, CYCLE_END).valid
        )
        self.assertTrue(
            validate_category_limit(self.practitioner.pk, 'RESEARCH', 0, CYCLE_START, CYCLE_END).valid
        )

    def test_headroom_is_remaining_before_addition(self):
        other = make_practitioner(self.unit, 'Dr. Headroom')
        make_cycle(other, caps={'CONFERENCE': 10})
        make_record(other, self.conference, credits=Decimal('6'), evidence_ref='cert.pdf')

        result = validate_category_limit(other.pk, 'CONFERENCE', Decimal('4'), CYCLE_START, CYCLE_END)
        self.assertTrue(result.valid)
        self.assertEqual(result.remaining, Decimal('4.00'))

        result = validate_category_limit(other.pk, 'CONFERENCE', Decimal('4.01'), CYCLE_START, CYCLE_END)
        self.assertFalse(result.valid)

    def test_caps_fall_back_to_active_credit_rule(self):
        CreditRule.objects.create(
            name='2020 policy', effective_from=date(2020, 1, 1), category_caps={'COURSE': '30'}
        )
        result = validate_category_limit(
            self.practitioner.pk, 'COURSE', 31, date(2030, 1, 1), date(2034, 12, 31)
        )
        self.assertFalse(result.valid)
        self.assertEqual(result.cap, Decimal('30'))
        self.assertEqual(result.current_total, Decimal('0.00'))

    def test_soft_deleted_entry_still_counts_for_history(self):
        self.course.soft_delete()

        self.assertFalse(ActivityCatalogEntry.objects.filter(pk=self.course.pk).exists())
        self.assertIsNotNone(fetch_catalog_rule(self.course.pk))
        self.assertEqual(get_current_cycle(self.practitioner.pk, TODAY).earned_credits, Decimal('18.00'))

        record = ActivityRecord(
            practitioner=self.practitioner, catalog_entry=self.course,
            title='New', activity_date=TODAY, hours=Decimal('1'),
        )
        with self.assertRaises(ValidationError):
            record.full_clean()

        self.course.restore()
        self.assertTrue(ActivityCatalogEntry.objects.filter(pk=self.course.pk).exists())

    def test_results_are_idempotent(self):
        first = get_credit_summary_by_type(self.practitioner.pk, CYCLE_START, CYCLE_END)
        second = get_credit_summary_by_type(self.practitioner.pk, CYCLE_START, CYCLE_END)
        self.assertEqual(first, second)
        self.assertEqual(get_current_cycle(self.practitioner.pk, TODAY), get_current_cycle(self.practitioner.pk, TODAY))


class CatalogAvailabilityTestCase(TestCase):

    def test_owner_unit_and_validity_window(self):
        unit = make_unit('Owner')
        other = make_unit('Other')
        entry = make_entry(owner_unit=unit, valid_from=date(2024, 1, 1), valid_to=date(2024, 12, 31))

        self.assertTrue(entry.is_available_for(unit.pk, date(2024, 6, 1)))
        self.assertFalse(entry.is_available_for(other.pk, date(2024, 6, 1)))
        self.assertFalse(entry.is_available_for(unit.pk, date(2025, 1, 1)))

    def test_default_date_is_local_date(self):
        entry = make_entry(valid_to=date(2024, 12, 31))

        with mock.patch('compliance.models.localdate', return_value=date(2024, 12, 31)):
            self.assertTrue(entry.is_available_for())
        with mock.patch('compliance.models.localdate', return_value=date(2025, 1, 1)):
            self.assertFalse(entry.is_available_for())

    @override_settings(TIME_ZONE='Asia/Ho_Chi_Minh')
    def test_availability_follows_local_calendar_day(self):
        entry = make_entry(valid_from=date(2025, 7, 2))
        # 20:00 UTC on 1 July is already 2 July in Ho Chi Minh City
        late_evening_utc = datetime(2025, 7, 1, 20, 0, tzinfo=dt_timezone.utc)
        with mock.patch('django.utils.timezone.now', return_value=late_evening_utc):
            self.assertTrue(entry.is_available_for())

    def test_inactive_entry_unavailable(self):
        entry = make_entry(status=ActivityCatalogEntry.Status.INACTIVE)
        self.assertFalse(entry.is_available_for(None, TODAY))

    def test_threshold_ordering_validated(self):
        entry = ActivityCatalogEntry(name='Bad', min_hours=Decimal('5'), max_hours=Decimal('2'))
        with self.assertRaises(ValidationError):
            entry.full_clean()


class CycleFromRuleTestCase(TestCase):

    def test_open_from_rule(self):
        practitioner = make_practitioner(make_unit())
        rule = CreditRule.objects.create(
            name='Standard', total_required_credits=Decimal('120'), cycle_years=5,
            category_caps={'CONFERENCE': 40},
        )
        cycle = ComplianceCycle.open_from_rule(practitioner, date(2025, 1, 1), rule)

        self.assertEqual(cycle.end_date, date(2030, 1, 1))
        self.assertEqual(cycle.required_credits, Decimal('120'))
        self.assertEqual(cycle.category_caps, {'CONFERENCE': 40})
        self.assertEqual(cycle.credit_rule, rule)

    def test_open_without_rule_uses_configured_defaults(self):
        practitioner = make_practitioner(make_unit())
        config = EngineConfig(default_required_credits=Decimal('80'), default_cycle_years=3)
        cycle = ComplianceCycle.open_from_rule(practitioner, date(2025, 1, 1), None, config)

        self.assertEqual(cycle.end_date, date(2028, 1, 1))
        self.assertEqual(cycle.required_credits, Decimal('80'))
        self.assertEqual(cycle.category_caps, {})
        self.assertIsNone(cycle.credit_rule)

        default = ComplianceCycle.open_from_rule(make_practitioner(make_unit('Other')), date(2025, 1, 1), None)
        self.assertEqual(default.required_credits, Decimal('120'))
        self.assertEqual(default.end_date, date(2030, 1, 1))

    def test_invalid_caps_rejected(self):
        practitioner = make_practitioner(make_unit())
        cycle = ComplianceCycle(
            practitioner=practitioner, start_date=CYCLE_START, end_date=CYCLE_END,
            required_credits=Decimal('120'), category_caps={'HOBBY': 5},
        )
        with self.assertRaises(ValidationError):
            cycle.full_clean()

    def test_active_rule_prefers_latest_effective_date(self):
        CreditRule.objects.create(name='Old', effective_from=date(2015, 1, 1))
        CreditRule.objects.create(name='New', effective_from=date(2024, 1, 1))
        CreditRule.objects.create(name='Disabled', effective_from=date(2025, 1, 1), is_enabled=False)

        self.assertEqual(CreditRule.get_active(TODAY).name, 'New')
        self.assertEqual(CreditRule.get_active(date(2020, 1, 1)).name, 'Old')

    def test_active_rule_defaults_to_local_date(self):
        CreditRule.objects.create(name='Old', effective_from=date(2015, 1, 1))
        CreditRule.objects.create(name='From July', effective_from=date(2025, 7, 2))

        with mock.patch('compliance.models.localdate', return_value=date(2025, 7, 1)):
            self.assertEqual(CreditRule.get_active().name, 'Old')
        with mock.patch('compliance.models.localdate', return_value=date(2025, 7, 2)):
            self.assertEqual(CreditRule.get_active().name, 'From July')


class OpenCycleAdminActionTestCase(TestCase):

    def setUp(self):
        self.admin_user = User.objects.create_superuser('root', 'root@example.com', 'pass')
        self.client.force_login(self.admin_user)
        self.practitioner = make_practitioner(make_unit())
        self.url = reverse('admin:compliance_practitioner_changelist')

    def run_action(self):
        return self.client.post(self.url, {
            'action': 'open_cycle_from_active_rule',
            '_selected_action': [str(self.practitioner.pk)],
        })

    @override_settings(COMPLIANCE_ENGINE={'DEFAULT_REQUIRED_CREDITS': '90', 'DEFAULT_CYCLE_YEARS': 2})
    def test_opens_cycle_from_configured_defaults_without_rule(self):
        response = self.run_action()

        self.assertEqual(response.status_code, 302)
        cycle = ComplianceCycle.objects.get(practitioner=self.practitioner)
        self.assertEqual(cycle.required_credits, Decimal('90'))
        self.assertEqual(cycle.end_date, add_years(cycle.start_date, 2))
        self.assertIsNone(cycle.credit_rule)
        self.assertTrue(AuditLog.objects.filter(object_id=str(cycle.pk)).exists())

    def test_prefers_active_rule(self):
        rule = CreditRule.objects.create(name='Standard', total_required_credits=Decimal('150'), cycle_years=5)
        self.run_action()

        cycle = ComplianceCycle.objects.get(practitioner=self.practitioner)
        self.assertEqual(cycle.required_credits, Decimal('150'))
        self.assertEqual(cycle.credit_rule, rule)


class ComplianceStatisticsTestCase(TestCase):

    def setUp(self):
        unit = make_unit()
        self.entry = make_entry()
        self.practitioners = {}
        for name, credits in (('compliant', '100'), ('at_risk', '40'), ('behind', '10')):
            practitioner = make_practitioner(unit, name)
            make_cycle(practitioner, required='100')
            make_record(practitioner, self.entry, credits=Decimal(credits))
            self.practitioners[name] = practitioner

        self.practitioners['no_cycle'] = make_practitioner(unit, 'no cycle')
        ended = make_practitioner(unit, 'ended')
        make_cycle(ended, date(2019, 1, 1), date(2024, 12, 31), required='100')
        make_record(ended, self.entry, credits=Decimal('50'), activity_date=date(2022, 1, 1))
        self.practitioners['ended'] = ended

    def ids(self):
        return [p.pk for p in self.practitioners.values()]

    def test_statistics(self):
        stats = get_compliance_statistics(self.ids(), TODAY)

        self.assertEqual(stats.total, 5)
        self.assertEqual(stats.classified, 3)
        self.assertEqual(stats.unclassified, 2)
        self.assertEqual(stats.compliant, 1)
        self.assertEqual(stats.at_risk, 1)
        self.assertEqual(stats.non_compliant, 1)
        self.assertEqual(stats.average_completion, Decimal('50.00'))

    def test_buckets_partition_classified(self):
        stats = get_compliance_statistics(self.ids(), TODAY)
        self.assertEqual(stats.compliant + stats.at_risk + stats.non_compliant, stats.classified)
        self.assertEqual(stats.classified + stats.unclassified, stats.total)

    def test_latest_ended_policy_classifies_gap(self):
        stats = get_compliance_statistics(self.ids(), TODAY, EngineConfig(cycle_gap_policy='latest_ended'))
        self.assertEqual(stats.classified, 4)
        self.assertEqual(stats.non_compliant, 2)

    def test_duplicate_ids_counted_once(self):
        stats = get_compliance_statistics(self.ids() + self.ids(), TODAY)
        self.assertEqual(stats.total, 5)

    def test_same_practitioner_in_different_spellings_counted_once(self):
        practitioner = self.practitioners['compliant']
        stats = get_compliance_statistics(
            [practitioner.pk.hex, str(practitioner.pk), str(practitioner.pk).upper()], TODAY
        )
        self.assertEqual((stats.total, stats.classified, stats.compliant), (1, 1, 1))

    def test_malformed_ids_count_but_stay_unclassified(self):
        with self.assertNumQueries(2):
            stats = get_compliance_statistics(self.ids() + ['not-a-uuid'], TODAY)
        self.assertEqual(stats.total, 6)
        self.assertEqual(stats.classified, 3)
        self.assertEqual(stats.unclassified, 3)

    def test_empty_input(self):
        stats = get_compliance_statistics([], TODAY)
        self.assertEqual((stats.total, stats.classified, stats.average_completion), (0, 0, Decimal('0')))

    def test_batch_uses_two_queries(self):
        with self.assertNumQueries(2):
            get_compliance_statistics(self.ids(), TODAY)

    def test_agrees_with_single_cycle_lookup(self):
        practitioner = self.practitioners['at_risk']
        status = get_current_cycle(practitioner.pk, TODAY)
        self.assertEqual(classify_compliance(status, TODAY), ComplianceClass.AT_RISK)


class UnitComparisonTestCase(TestCase):

    def setUp(self):
        for number in range(1, 31):
            make_unit(f'Unit {number:02d}')
        make_unit('Closed Unit', is_active=False)

    def test_page_past_the_end_keeps_totals(self):
        page = get_unit_comparison_page(page=5, page_size=20, today=TODAY)
        self.assertEqual(page.items, [])
        self.assertEqual(page.total_items, 30)
        self.assertEqual(page.total_pages, 2)
        self.assertEqual(page.page, 5)

    def test_last_page(self):
        page = get_unit_comparison_page(page=2, page_size=20, today=TODAY)
        self.assertEqual(len(page.items), 10)
        self.assertEqual(page.items[0].unit_name, 'Unit 21')

    def test_search(self):
        page = get_unit_comparison_page(search='Unit 1', today=TODAY)
        self.assertEqual(page.total_items, 10)

    def test_unit_figures(self):
        unit = Unit.objects.get(name='Unit 01')
        entry = make_entry()
        done = make_practitioner(unit, 'done')
        make_cycle(done, required='100')
        make_record(done, entry, credits=Decimal('100'))
        behind = make_practitioner(unit, 'behind')
        make_cycle(behind, required='100')
        make_record(behind, entry, credits=Decimal('40'))
        make_record(behind, entry, status=Status.PENDING, credits=Decimal('5'))
        make_practitioner(unit, 'no cycle')
        make_practitioner(unit, 'left', employment_status=Practitioner.EmploymentStatus.LEFT)

        row = get_unit_comparison_page(page=1, page_size=1, today=TODAY).items[0]
        self.assertEqual(row.unit_name, 'Unit 01')
        self.assertEqual(row.practitioner_count, 3)
        self.assertEqual(row.classified, 2)
        self.assertEqual(row.compliant, 1)
        self.assertEqual(row.at_risk, 1)
        self.assertEqual(row.compliance_rate, Decimal('50.00'))
        self.assertEqual(row.pending_submissions, 1)


# ============================================================================
# APPROVAL WORKFLOW
# ============================================================================

class WorkflowTestCase(TestCase):

    def setUp(self):
        self.unit = make_unit()
        self.other_unit = make_unit('Other Hospital')
        self.reviewer = User.objects.create_user(
            'reviewer', password='pass', role=User.Role.UNIT_ADMIN, unit=self.unit
        )
        self.practitioner = make_practitioner(self.unit)
        self.entry = make_entry()

    def pending(self, practitioner=None):
        return make_record(practitioner or self.practitioner, self.entry, status=Status.PENDING,
                           credits=Decimal('5'))

    def test_transition_table(self):
        self.assertTrue(can_transition(Status.PENDING, Status.APPROVED))
        self.assertTrue(can_transition(Status.PENDING, Status.REJECTED))
        self.assertTrue(can_transition(Status.APPROVED, Status.REVOKED))
        self.assertFalse(can_transition(Status.REJECTED, Status.APPROVED))
        self.assertFalse(can_transition(Status.REVOKED, Status.APPROVED))
        self.assertFalse(can_transition(Status.APPROVED, Status.PENDING))

    def test_approve(self):
        record = approve_submission(self.pending().pk, self.reviewer, 'Looks good')
        self.assertEqual(record.status, Status.APPROVED)
        self.assertEqual(record.reviewer, self.reviewer)
        self.assertIsNotNone(record.reviewed_at)
        self.assertEqual(record.review_notes, 'Looks good')

    def test_second_approval_is_rejected(self):
        record = self.pending()
        approve_submission(record.pk, self.reviewer)
        with self.assertRaises(InvalidTransitionError) as ctx:
            approve_submission(record.pk, self.reviewer)
        self.assertEqual(ctx.exception.status_code, 409)

    def test_unknown_submission(self):
        with self.assertRaises(ResourceNotFoundError):
            approve_submission(uuid.uuid4(), self.reviewer)

    def test_reject_requires_reason(self):
        record = self.pending()
        with self.assertRaises(ValidationError):
            reject_submission(record.pk, self.reviewer, '  ')
        record = reject_submission(record.pk, self.reviewer, 'No certificate')
        self.assertEqual(record.status, Status.REJECTED)

    def test_rejected_cannot_be_approved(self):
        record = self.pending()
        reject_submission(record.pk, self.reviewer, 'No certificate')
        with self.assertRaises(InvalidTransitionError):
            approve_submission(record.pk, self.reviewer)

    def test_revoke_only_approved(self):
        record = self.pending()
        with self.assertRaises(InvalidTransitionError):
            revoke_submission(record.pk, self.reviewer, 'Fraud')

        approve_submission(record.pk, self.reviewer)
        record = revoke_submission(record.pk, self.reviewer, 'Fraud')
        self.assertEqual(record.status, Status.REVOKED)
        self.assertEqual(record.revoked_by, self.reviewer)
        self.assertEqual(record.revocation_reason, 'Fraud')
        self.assertEqual(calculate_effective_credits(record, record.catalog_entry), Decimal('0'))

    def test_delete_pending_only(self):
        record = self.pending()
        delete_pending_submission(record.pk, self.reviewer)
        self.assertFalse(ActivityRecord.objects.filter(pk=record.pk).exists())

        approved = make_record(self.practitioner, self.entry, credits=Decimal('5'))
        with self.assertRaises(InvalidTransitionError):
            delete_pending_submission(approved.pk, self.reviewer)
        self.assertTrue(ActivityRecord.objects.filter(pk=approved.pk).exists())

    def test_bulk_approve_reports_skipped(self):
        first, second = self.pending(), self.pending()
        approved = make_record(self.practitioner, self.entry, credits=Decimal('5'))
        unknown = str(uuid.uuid4())

        result = bulk_approve(
            [first.pk, str(second.pk).upper(), approved.pk, unknown, 'not-an-id'], self.reviewer
        )

        self.assertEqual(result.updated_ids, [str(first.pk), str(second.pk)])
        self.assertEqual(result.skipped_ids, [str(approved.pk), unknown, 'not-an-id'])
        self.assertEqual(result.processed_count, 2)
        self.assertEqual(
            ActivityRecord.objects.filter(status=Status.APPROVED).count(), 3
        )

    def test_bulk_approve_respects_unit_scope(self):
        own = self.pending()
        foreign = self.pending(make_practitioner(self.other_unit, 'Dr. Elsewhere'))

        result = bulk_approve([own.pk, foreign.pk], self.reviewer, unit_id=self.unit.pk)

        self.assertEqual(result.updated_ids, [str(own.pk)])
        self.assertEqual(result.skipped_ids, [str(foreign.pk)])
        foreign.refresh_from_db()
        self.assertEqual(foreign.status, Status.PENDING)

    def test_bulk_revoke(self):
        approved = make_record(self.practitioner, self.entry, credits=Decimal('5'))
        pending = self.pending()
        with self.assertRaises(ValidationError):
            bulk_revoke([approved.pk], self.reviewer, '')

        result = bulk_revoke([approved.pk, pending.pk], self.reviewer, 'Audit finding')
        self.assertEqual(result.updated_ids, [str(approved.pk)])
        self.assertEqual(result.skipped_ids, [str(pending.pk)])

    def test_transition_writes_audit_after_commit(self):
        record = self.pending()
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            approve_submission(record.pk, self.reviewer, ip_address='10.0.0.1')
            self.assertFalse(AuditLog.objects.exists())

        self.assertEqual(len(callbacks), 1)
        log = AuditLog.objects.get(object_id=str(record.pk))
        self.assertEqual(log.action, AuditLog.Action.APPROVE)
        self.assertEqual(log.actor, self.reviewer)
        self.assertEqual(log.content['previous_status'], 'PENDING')
        self.assertEqual(log.content['new_status'], 'APPROVED')
        self.assertEqual(log.ip_address, '10.0.0.1')

    def test_bulk_writes_one_audit_entry_per_record(self):
        records = [self.pending(), self.pending()]
        with self.captureOnCommitCallbacks(execute=True):
            bulk_approve([r.pk for r in records], self.reviewer)
        self.assertEqual(AuditLog.objects.filter(action=AuditLog.Action.APPROVE).count(), 2)

    def test_failed_transition_writes_no_audit(self):
        record = make_record(self.practitioner, self.entry, credits=Decimal('5'))
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            with self.assertRaises(InvalidTransitionError):
                approve_submission(record.pk, self.reviewer)
        self.assertEqual(callbacks, [])


class AuditTestCase(TestCase):

    def test_audit_failure_is_logged_not_raised(self):
        with mock.patch.object(AuditLog.objects, 'create', side_effect=DatabaseError('down')):
            with self.assertLogs('compliance.audit', level='ERROR'):
                self.assertIsNone(record_audit_event(AuditLog.Action.CREATE, None, 'Thing', 1))

    def test_entries_are_append_only(self):
        entry = record_audit_event(AuditLog.Action.CREATE, None, 'Thing', 1, {'a': 1})
        entry.content = {'a': 2}
        with self.assertRaises(ValidationError):
            entry.save()


# ============================================================================
# HTTP API
# ============================================================================

class ApiTestCase(TestCase):

    def setUp(self):
        cache.clear()
        self.client = APIClient()
        self.today = timezone.localdate()
        self.unit = make_unit()
        self.other_unit = make_unit('Other Hospital')

        self.doh_admin = User.objects.create_user('doh', password='pass', role=User.Role.DOH_ADMIN)
        self.unit_admin = User.objects.create_user(
            'unitadmin', password='pass', role=User.Role.UNIT_ADMIN, unit=self.unit
        )
        self.practitioner_user = User.objects.create_user('prac', password='pass', unit=self.unit)

        self.practitioner = make_practitioner(self.unit, user=self.practitioner_user)
        self.stranger = make_practitioner(self.other_unit, 'Dr. Stranger')
        self.entry = make_entry(ratio='0.5', max_hours=Decimal('40'))
        self.start = self.today - timedelta(days=365)
        self.end = self.today + timedelta(days=730)
        make_cycle(self.practitioner, self.start, self.end, caps={'COURSE': 30})
        self.record = make_record(
            self.practitioner, self.entry, credits=Decimal('12'), activity_date=self.today,
            title='Recent course',
        )

    def test_requires_authentication(self):
        response = self.client.get(reverse('compliance:current_cycle', args=[self.practitioner.pk]))
        self.assertIn(response.status_code, (401, 403))

    def test_calculate_credits(self):
        self.client.force_authenticate(self.practitioner_user)
        response = self.client.post(
            reverse('compliance:calculate_credits'),
            {'catalog_entry_id': str(self.entry.pk), 'hours': '50'},
            format='json',
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['credits'], 20.0)

    def test_calculate_credits_unknown_entry(self):
        self.client.force_authenticate(self.practitioner_user)
        response = self.client.post(
            reverse('compliance:calculate_credits'),
            {'catalog_entry_id': str(uuid.uuid4()), 'hours': '5'},
            format='json',
        )
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()['error']['code'], 'RESOURCE_NOT_FOUND')

    def test_calculate_credits_validates_input(self):
        self.client.force_authenticate(self.practitioner_user)
        response = self.client.post(
            reverse('compliance:calculate_credits'),
            {'catalog_entry_id': str(self.entry.pk), 'hours': 'many'},
            format='json',
        )
        self.assertEqual(response.status_code, 400)

    def test_practitioner_sees_own_cycle(self):
        self.client.force_authenticate(self.practitioner_user)
        response = self.client.get(reverse('compliance:current_cycle', args=[self.practitioner.pk]))

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data['cycle']['earned_credits'], 12.0)
        self.assertEqual(data['cycle']['status'], 'IN_PROGRESS')
        self.assertEqual(data['summary'][0]['activity_type'], 'COURSE')
        self.assertEqual(data['summary'][0]['remaining'], 18.0)

    def test_practitioner_cannot_see_others(self):
        self.client.force_authenticate(self.practitioner_user)
        response = self.client.get(reverse('compliance:current_cycle', args=[self.stranger.pk]))
        self.assertEqual(response.status_code, 403)

    def test_no_cycle_is_not_an_error(self):
        self.client.force_authenticate(self.doh_admin)
        response = self.client.get(reverse('compliance:current_cycle', args=[self.stranger.pk]))
        self.assertEqual(response.status_code, 200)
        self.assertIsNone(response.json()['cycle'])

    def test_history_defaults_to_current_cycle(self):
        self.client.force_authenticate(self.unit_admin)
        response = self.client.get(reverse('compliance:credit_history', args=[self.practitioner.pk]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual([r['title'] for r in response.json()['results']], ['Recent course'])

    def test_history_rejects_half_window(self):
        self.client.force_authenticate(self.unit_admin)
        response = self.client.get(
            reverse('compliance:credit_history', args=[self.practitioner.pk]), {'start': '2024-01-01'}
        )
        self.assertEqual(response.status_code, 400)

    def test_category_limit(self):
        self.client.force_authenticate(self.practitioner_user)
        response = self.client.post(reverse('compliance:category_limit'), {
            'practitioner_id': str(self.practitioner.pk),
            'activity_type': 'COURSE',
            'proposed_credits': '20',
            'cycle_start': self.start.isoformat(),
            'cycle_end': self.end.isoformat(),
        }, format='json')

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertFalse(data['valid'])
        self.assertEqual(data['remaining'], 18.0)

    def test_statistics(self):
        self.client.force_authenticate(self.doh_admin)
        response = self.client.post(
            reverse('compliance:statistics'),
            {'practitioner_ids': [str(self.practitioner.pk), str(self.stranger.pk)]},
            format='json',
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['total'], 2)
        self.assertEqual(response.json()['classified'], 1)

    def test_statistics_forbidden_for_practitioners(self):
        self.client.force_authenticate(self.practitioner_user)
        response = self.client.post(reverse('compliance:statistics'), {'practitioner_ids': []}, format='json')
        self.assertEqual(response.status_code, 403)

    def test_unit_admin_statistics_scoped_to_unit(self):
        self.client.force_authenticate(self.unit_admin)
        response = self.client.post(
            reverse('compliance:statistics'), {'practitioner_ids': [str(self.stranger.pk)]}, format='json'
        )
        self.assertEqual(response.status_code, 403)

    @override_settings(COMPLIANCE_RATE_LIMITS={'statistics': (2, 60), 'bulk_review': (10, 60)})
    def test_statistics_rate_limited(self):
        self.client.force_authenticate(self.doh_admin)
        url = reverse('compliance:statistics')
        for _ in range(2):
            self.assertEqual(self.client.post(url, {'practitioner_ids': []}, format='json').status_code, 200)

        response = self.client.post(url, {'practitioner_ids': []}, format='json')
        self.assertEqual(response.status_code, 429)
        self.assertGreater(int(response['Retry-After']), 0)

    def test_unit_comparison(self):
        self.client.force_authenticate(self.doh_admin)
        response = self.client.get(reverse('compliance:unit_comparison'), {'page': 5, 'page_size': 20})
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data['items'], [])
        self.assertEqual(data['total_items'], 2)
        self.assertEqual(data['total_pages'], 1)

    def test_unit_comparison_forbidden_for_unit_admin(self):
        self.client.force_authenticate(self.unit_admin)
        response = self.client.get(reverse('compliance:unit_comparison'))
        self.assertEqual(response.status_code, 403)

    def test_review_flow(self):
        pending = make_record(self.practitioner, self.entry, status=Status.PENDING, credits=Decimal('3'))
        self.client.force_authenticate(self.unit_admin)
        url = reverse('compliance:submission_review', args=[pending.pk, 'approve'])

        response = self.client.post(url, {'notes': 'ok'}, format='json')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['status'], 'APPROVED')

        response = self.client.post(url, {}, format='json')
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['error']['code'], 'INVALID_TRANSITION')

    def test_revoke_requires_reason(self):
        self.client.force_authenticate(self.unit_admin)
        url = reverse('compliance:submission_review', args=[self.record.pk, 'revoke'])
        self.assertEqual(self.client.post(url, {}, format='json').status_code, 400)
        response = self.client.post(url, {'reason': 'Duplicate'}, format='json')
        self.assertEqual(response.json()['status'], 'REVOKED')

    def test_unknown_review_action(self):
        self.client.force_authenticate(self.unit_admin)
        response = self.client.post(
            reverse('compliance:submission_review', args=[self.record.pk, 'archive']), {}, format='json'
        )
        self.assertEqual(response.status_code, 404)

    def test_unit_admin_cannot_review_other_units(self):
        foreign = make_record(self.stranger, self.entry, status=Status.PENDING, credits=Decimal('3'))
        self.client.force_authenticate(self.unit_admin)
        response = self.client.post(
            reverse('compliance:submission_review', args=[foreign.pk, 'approve']), {}, format='json'
        )
        self.assertEqual(response.status_code, 403)

    def test_practitioner_cannot_review(self):
        self.client.force_authenticate(self.practitioner_user)
        response = self.client.post(
            reverse('compliance:submission_review', args=[self.record.pk, 'revoke']),
            {'reason': 'x'}, format='json',
        )
        self.assertEqual(response.status_code, 403)

    def test_bulk_review(self):
        own = make_record(self.practitioner, self.entry, status=Status.PENDING, credits=Decimal('3'))
        foreign = make_record(self.stranger, self.entry, status=Status.PENDING, credits=Decimal('3'))
        self.client.force_authenticate(self.unit_admin)

        response = self.client.post(reverse('compliance:bulk_review'), {
            'action': 'approve',
            'submission_ids': [str(own.pk), str(foreign.pk)],
        }, format='json')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {
            'processed_count': 1,
            'updated_ids': [str(own.pk)],
            'skipped_ids': [str(foreign.pk)],
        })

    def test_submitter_deletes_pending_record(self):
        pending = make_record(
            self.practitioner, self.entry, status=Status.PENDING, submitted_by=self.practitioner_user
        )
        self.client.force_authenticate(self.practitioner_user)

        url = reverse('compliance:submission_detail', args=[pending.pk])
        self.assertEqual(self.client.delete(url).status_code, 204)
        self.assertEqual(self.client.delete(url).status_code, 404)

    def test_approved_record_is_retained(self):
        self.client.force_authenticate(self.doh_admin)
        response = self.client.delete(reverse('compliance:submission_detail', args=[self.record.pk]))
        self.assertEqual(response.status_code, 409)

    def test_health_check(self):
        response = self.client.get(reverse('health_check'))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['status'], 'healthy')


class StatisticsCommandTestCase(TestCase):

    def test_json_report(self):
        unit = make_unit()
        practitioner = make_practitioner(unit)
        make_cycle(practitioner, required='100')
        make_record(practitioner, make_entry(), credits=Decimal('100'))

        out = StringIO()
        call_command('compliance_statistics', '--json', '--date', TODAY.isoformat(), stdout=out)
        report = json.loads(out.getvalue())

        self.assertEqual(report['date'], TODAY.isoformat())
        self.assertEqual(report['units'][0]['unit_name'], 'General Hospital')
        self.assertEqual(report['units'][0]['compliant'], 1)

    def test_table_output(self):
        make_unit()
        out = StringIO()
        call_command('compliance_statistics', '--date', TODAY.isoformat(), stdout=out)
        self.assertIn('General Hospital', out.getvalue())
