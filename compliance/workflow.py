"""
Approval workflow for activity records.

Every transition is a conditional UPDATE carrying the required current
status in its WHERE clause, so two reviewers acting on the same record
cannot both succeed. Audit events are announced through
``submission_status_changed`` and written after commit.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Tuple

from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils.timezone import now

from core.errors import InvalidTransitionError, ResourceNotFoundError
from .models import ActivityRecord, AuditLog
from .queries import canonical_id
from .signals import submission_status_changed

logger = logging.getLogger(__name__)

Status = ActivityRecord.Status

TRANSITIONS = {
    Status.PENDING: (Status.APPROVED, Status.REJECTED),
    Status.APPROVED: (Status.REVOKED,),
    Status.REJECTED: (),
    Status.REVOKED: (),
}


@dataclass(frozen=True)
class BulkResult:
    updated_ids: List[str] = field(default_factory=list)
    skipped_ids: List[str] = field(default_factory=list)

    @property
    def processed_count(self):
        return len(self.updated_ids)

    def as_dict(self):
        return {
            'processed_count': self.processed_count,
            'updated_ids': self.updated_ids,
            'skipped_ids': self.skipped_ids,
        }


def can_transition(from_status, to_status) -> bool:
    return to_status in TRANSITIONS.get(from_status, ())


# ============================================================================
# INTERNAL HELPERS
# ============================================================================

def _require_reason(reason, action):
    if not reason or not str(reason).strip():
        raise ValidationError(f"A reason is required to {action} a submission")
    return str(reason).strip()


def _raise_for_missed_update(submission_id, action):
    """The conditional update touched nothing: unknown id or wrong status."""
    current = (
        ActivityRecord.objects.filter(pk=submission_id)
        .values_list('status', flat=True)
        .first()
    )
    if current is None:
        raise ResourceNotFoundError('Submission', str(submission_id))
    raise InvalidTransitionError(str(submission_id), action, current)


def _normalise_ids(submission_ids: Iterable) -> Tuple[List[str], List[str]]:
    """Split requested ids into canonical UUID strings and unparseable values."""
    valid, invalid = [], []
    for value in submission_ids:
        canonical = canonical_id(value)
        if canonical is None:
            invalid.append(str(value))
            continue
        if canonical not in valid:
            valid.append(canonical)
    return valid, invalid


def _announce(ids, action, actor, previous, new, reason='', ip_address=None):
    submission_status_changed.send(
        sender=ActivityRecord,
        submission_ids=[str(i) for i in ids],
        action=action,
        actor=actor,
        previous_status=previous,
        new_status=new,
        reason=reason,
        ip_address=ip_address,
    )


def _transition(submission_id, action, audit_action, from_status, to_status, changes, actor,
                reason='', ip_address=None):
    with transaction.atomic():
        updated = (
            ActivityRecord.objects.filter(pk=submission_id, status=from_status)
            .update(status=to_status, updated_at=now(), **changes)
        )
        if not updated:
            _raise_for_missed_update(submission_id, action)

        record = ActivityRecord.objects.get(pk=submission_id)
        _announce([record.pk], audit_action, actor, from_status, to_status, reason, ip_address)

    logger.info(f"Submission {submission_id} {from_status} -> {to_status} by {actor}")
    return record


def _bulk_transition(submission_ids, audit_action, from_status, to_status, changes, actor,
                     unit_id=None, reason='', ip_address=None) -> BulkResult:
    requested, invalid = _normalise_ids(submission_ids)

    with transaction.atomic():
        eligible = ActivityRecord.objects.select_for_update().filter(
            pk__in=requested, status=from_status
        )
        if unit_id is not None:
            eligible = eligible.filter(practitioner__unit_id=unit_id)
        matched = {str(pk) for pk in eligible.values_list('id', flat=True)}

        if matched:
            ActivityRecord.objects.filter(pk__in=matched, status=from_status).update(
                status=to_status, updated_at=now(), **changes
            )
            _announce(sorted(matched), audit_action, actor, from_status, to_status, reason, ip_address)

    updated_ids = [pk for pk in requested if pk in matched]
    skipped_ids = [pk for pk in requested if pk not in matched] + invalid
    logger.info(
        f"Bulk {audit_action.lower()} by {actor}: {len(updated_ids)} updated, "
        f"{len(skipped_ids)} skipped"
    )
    return BulkResult(updated_ids=updated_ids, skipped_ids=skipped_ids)


# ============================================================================
# SINGLE TRANSITIONS
# ============================================================================

def approve_submission(submission_id, actor, notes='', ip_address=None):
    return _transition(
        submission_id, 'approve', AuditLog.Action.APPROVE,
        Status.PENDING, Status.APPROVED,
        {'reviewer': actor, 'reviewed_at': now(), 'review_notes': notes or ''},
        actor, notes or '', ip_address,
    )


def reject_submission(submission_id, actor, reason, ip_address=None):
    reason = _require_reason(reason, 'reject')
    return _transition(
        submission_id, 'reject', AuditLog.Action.REJECT,
        Status.PENDING, Status.REJECTED,
        {'reviewer': actor, 'reviewed_at': now(), 'review_notes': reason},
        actor, reason, ip_address,
    )


def revoke_submission(submission_id, actor, reason, ip_address=None):
    """Withdraw an approval. The record stays, its effective credit drops to 0."""
    reason = _require_reason(reason, 'revoke')
    return _transition(
        submission_id, 'revoke', AuditLog.Action.REVOKE,
        Status.APPROVED, Status.REVOKED,
        {'revoked_by': actor, 'revoked_at': now(), 'revocation_reason': reason},
        actor, reason, ip_address,
    )


def delete_pending_submission(submission_id, actor, ip_address=None):
    """Delete a record that was never reviewed. Reviewed records are retained."""
    with transaction.atomic():
        deleted, _ = ActivityRecord.objects.filter(
            pk=submission_id, status=Status.PENDING
        ).delete()
        if not deleted:
            _raise_for_missed_update(submission_id, 'delete')
        _announce([submission_id], AuditLog.Action.DELETE, actor, Status.PENDING, None,
                  ip_address=ip_address)

    logger.info(f"Pending submission {submission_id} deleted by {actor}")


# ============================================================================
# BULK TRANSITIONS
# ============================================================================

def bulk_approve(submission_ids, actor, notes='', unit_id=None, ip_address=None) -> BulkResult:
    """
    Approve every pending record among ``submission_ids`` (restricted to
    ``unit_id`` when given). Ids that are not pending, out of scope or
    unknown are reported as skipped.
    """
    return _bulk_transition(
        submission_ids, AuditLog.Action.APPROVE, Status.PENDING, Status.APPROVED,
        {'reviewer': actor, 'reviewed_at': now(), 'review_notes': notes or ''},
        actor, unit_id, notes or '', ip_address,
    )


def bulk_revoke(submission_ids, actor, reason, unit_id=None, ip_address=None) -> BulkResult:
    reason = _require_reason(reason, 'revoke')
    return _bulk_transition(
        submission_ids, AuditLog.Action.REVOKE, Status.APPROVED, Status.REVOKED,
        {'revoked_by': actor, 'revoked_at': now(), 'revocation_reason': reason},
        actor, unit_id, reason, ip_address,
    )
