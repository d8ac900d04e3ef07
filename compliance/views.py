"""
JSON API for the credit compliance engine.

Views validate input, enforce role and unit scope, then hand off to
``credit_engine`` and ``workflow``. Authorization lives here; the engine
never checks who is asking.
"""

import logging

from django.utils import timezone
from rest_framework import status
from rest_framework.exceptions import NotFound
from rest_framework.permissions import BasePermission, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from accounts.models import User
from core.errors import InsufficientPermissionsError, ResourceNotFoundError, get_client_ip
from core.ratelimit import rate_limit
from .config import EngineConfig
from .credit_engine import (
    get_compliance_statistics, get_credit_history, get_credit_summary_by_type,
    get_current_cycle, get_unit_comparison_page, validate_category_limit,
)
from .credit_utils import calculate_credits
from .models import ActivityRecord, Practitioner
from .queries import fetch_catalog_rule
from .serializers import (
    ActivityRecordSerializer, BulkReviewSerializer, CalculateCreditsSerializer,
    CategoryLimitSerializer, CycleWindowSerializer, ReviewActionSerializer,
    StatisticsRequestSerializer, UnitComparisonQuerySerializer,
)
from .workflow import (
    approve_submission, bulk_approve, bulk_revoke, delete_pending_submission,
    reject_submission, revoke_submission,
)

logger = logging.getLogger(__name__)


# ============================================================================
# PERMISSIONS AND SCOPE HELPERS
# ============================================================================

class IsReviewer(BasePermission):
    """DOH administrators and unit administrators may review submissions."""
    message = "Only reviewers can perform this action."

    def has_permission(self, request, view):
        return bool(request.user and request.user.is_authenticated and request.user.is_reviewer)


class CanViewReports(BasePermission):
    message = "Only administrators and auditors can view compliance reports."

    def has_permission(self, request, view):
        return bool(
            request.user and request.user.is_authenticated
            and request.user.role != User.Role.PRACTITIONER
        )


def is_system_wide(user):
    return user.role in (User.Role.DOH_ADMIN, User.Role.AUDITOR)


def get_practitioner_for(user, practitioner_id):
    """
    Load a practitioner the user may see: everyone for system-wide roles,
    their own unit for unit administrators, themselves for practitioners.
    """
    practitioner = Practitioner.objects.filter(pk=practitioner_id).first()
    if practitioner is None:
        raise ResourceNotFoundError('Practitioner', str(practitioner_id))

    if is_system_wide(user):
        return practitioner
    if user.role == User.Role.UNIT_ADMIN and practitioner.unit_id == user.unit_id:
        return practitioner
    if practitioner.user_id is not None and practitioner.user_id == user.pk:
        return practitioner

    logger.warning(f"User {user.username} denied access to practitioner {practitioner_id}")
    raise InsufficientPermissionsError('view_practitioner')


def check_submission_scope(user, submission_id):
    """Unit administrators only act on records of practitioners in their unit."""
    unit_id = (
        ActivityRecord.objects.filter(pk=submission_id)
        .values_list('practitioner__unit_id', flat=True)
        .first()
    )
    if unit_id is None:
        raise ResourceNotFoundError('Submission', str(submission_id))

    scope = user.review_scope_unit_id
    if user.role == User.Role.UNIT_ADMIN and scope != unit_id:
        raise InsufficientPermissionsError('review_submission')


# ============================================================================
# CREDIT ENDPOINTS
# ============================================================================

class CalculateCreditsView(APIView):
    """Preview the credits a catalog entry awards for a number of hours."""

    def post(self, request):
        serializer = CalculateCreditsSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        entry_id = serializer.validated_data['catalog_entry_id']
        hours = serializer.validated_data['hours']

        rule = fetch_catalog_rule(entry_id)
        if rule is None:
            raise ResourceNotFoundError('Catalog entry', str(entry_id))

        return Response({
            'catalog_entry_id': rule.id,
            'activity_type': rule.activity_type,
            'hours': hours,
            'credits': calculate_credits(rule, hours),
            'evidence_required': rule.evidence_required,
        })


class CurrentCycleView(APIView):
    """Current cycle status plus the per-type breakdown for that cycle."""

    def get(self, request, practitioner_id):
        get_practitioner_for(request.user, practitioner_id)
        config = EngineConfig.from_settings()

        cycle = get_current_cycle(practitioner_id, config=config)
        if cycle is None:
            return Response({'cycle': None, 'summary': []})

        summary = get_credit_summary_by_type(practitioner_id, cycle.start_date, cycle.end_date)
        return Response({
            'cycle': cycle.as_dict(),
            'summary': [row.as_dict() for row in summary],
        })


class CreditHistoryView(APIView):
    """
    Per-record credit history for an explicit window (``start``/``end``
    query parameters) or, by default, the current cycle.
    """

    def get(self, request, practitioner_id):
        get_practitioner_for(request.user, practitioner_id)
        params = CycleWindowSerializer(data=request.query_params)
        params.is_valid(raise_exception=True)
        config = EngineConfig.from_settings()

        start = params.validated_data.get('start')
        end = params.validated_data.get('end')
        if start is None:
            cycle = get_current_cycle(practitioner_id, config=config)
            if cycle is None:
                return Response({'start': None, 'end': None, 'results': []})
            start, end = cycle.start_date, cycle.end_date

        history = get_credit_history(
            practitioner_id, start, end,
            limit=params.validated_data.get('limit'), config=config,
        )
        return Response({
            'start': start,
            'end': end,
            'results': [entry.as_dict() for entry in history],
        })


class CategoryLimitView(APIView):
    """Advisory cap check before a new activity is recorded."""

    def post(self, request):
        serializer = CategoryLimitSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        get_practitioner_for(request.user, data['practitioner_id'])

        result = validate_category_limit(
            data['practitioner_id'],
            data['activity_type'],
            data['proposed_credits'],
            data['cycle_start'],
            data['cycle_end'],
        )
        return Response(result.as_dict())


class ComplianceStatisticsView(APIView):
    permission_classes = [IsAuthenticated, CanViewReports]

    @rate_limit('statistics')
    def post(self, request):
        serializer = StatisticsRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        practitioner_ids = [str(pid) for pid in serializer.validated_data['practitioner_ids']]
        today = serializer.validated_data.get('date') or timezone.localdate()

        if request.user.role == User.Role.UNIT_ADMIN:
            outside = (
                Practitioner.objects.filter(pk__in=practitioner_ids)
                .exclude(unit_id=request.user.unit_id)
                .exists()
            )
            if outside:
                raise InsufficientPermissionsError('view_unit_statistics')

        stats = get_compliance_statistics(practitioner_ids, today, EngineConfig.from_settings())
        return Response(stats.as_dict())


class UnitComparisonView(APIView):
    """Paginated compliance comparison across units, for system-wide roles."""
    permission_classes = [IsAuthenticated, CanViewReports]

    def get(self, request):
        if not is_system_wide(request.user):
            raise InsufficientPermissionsError('view_unit_comparison')

        params = UnitComparisonQuerySerializer(data=request.query_params)
        params.is_valid(raise_exception=True)
        page = get_unit_comparison_page(
            page=params.validated_data['page'],
            page_size=params.validated_data['page_size'],
            search=params.validated_data.get('search') or None,
            config=EngineConfig.from_settings(),
        )
        return Response(page.as_dict())


# ============================================================================
# SUBMISSION WORKFLOW ENDPOINTS
# ============================================================================

class SubmissionReviewView(APIView):
    permission_classes = [IsAuthenticated, IsReviewer]

    def post(self, request, submission_id, action):
        if action not in ('approve', 'reject', 'revoke'):
            raise NotFound(f"Unknown action '{action}'")

        serializer = ReviewActionSerializer(data=request.data, context={'action': action})
        serializer.is_valid(raise_exception=True)
        check_submission_scope(request.user, submission_id)

        ip_address = get_client_ip(request)
        data = serializer.validated_data
        if action == 'approve':
            record = approve_submission(submission_id, request.user, data['notes'], ip_address)
        elif action == 'reject':
            record = reject_submission(submission_id, request.user, data['reason'], ip_address)
        else:
            record = revoke_submission(submission_id, request.user, data['reason'], ip_address)

        return Response(ActivityRecordSerializer(record).data)


class SubmissionDetailView(APIView):

    def delete(self, request, submission_id):
        """Pending records may be deleted by their submitter or a reviewer in scope."""
        record = (
            ActivityRecord.objects.filter(pk=submission_id)
            .values('submitted_by_id')
            .first()
        )
        if record is None:
            raise ResourceNotFoundError('Submission', str(submission_id))

        if request.user.is_reviewer:
            check_submission_scope(request.user, submission_id)
        elif record['submitted_by_id'] != request.user.pk:
            raise InsufficientPermissionsError('delete_submission')

        delete_pending_submission(submission_id, request.user, get_client_ip(request))
        return Response(status=status.HTTP_204_NO_CONTENT)


class BulkReviewView(APIView):
    """
    Approve or revoke many submissions at once. Unit administrators are
    limited to their own unit; out-of-scope ids are reported as skipped.
    """
    permission_classes = [IsAuthenticated, IsReviewer]

    @rate_limit('bulk_review')
    def post(self, request):
        serializer = BulkReviewSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        ip_address = get_client_ip(request)
        unit_id = request.user.review_scope_unit_id
        if request.user.role == User.Role.UNIT_ADMIN and unit_id is None:
            raise InsufficientPermissionsError('review_submission')
        if data['action'] == 'approve':
            result = bulk_approve(
                data['submission_ids'], request.user, data['notes'], unit_id, ip_address
            )
        else:
            result = bulk_revoke(
                data['submission_ids'], request.user, data['reason'], unit_id, ip_address
            )

        return Response(result.as_dict())
