import logging
from functools import partial

from django.db import transaction
from django.dispatch import Signal, receiver

from .audit import record_audit_event

logger = logging.getLogger(__name__)

# Sent after activity records change status. Arguments: submission_ids,
# action, actor, previous_status, new_status, reason, ip_address.
submission_status_changed = Signal()


def _write_status_audit(submission_ids, action, actor, previous_status, new_status, reason,
                        ip_address):
    for submission_id in submission_ids:
        record_audit_event(
            action,
            actor,
            'ActivityRecord',
            submission_id,
            content={
                'previous_status': previous_status,
                'new_status': new_status,
                'reason': reason or '',
            },
            ip_address=ip_address,
        )


@receiver(submission_status_changed)
def audit_status_change(sender, submission_ids, action, actor, previous_status=None,
                        new_status=None, reason='', ip_address=None, **kwargs):
    """Write audit entries once the surrounding transaction commits."""
    logger.debug(f"Queueing {action} audit for {len(submission_ids)} submission(s)")
    transaction.on_commit(partial(
        _write_status_audit,
        list(submission_ids), action, actor,
        str(previous_status) if previous_status else None,
        str(new_status) if new_status else None,
        reason, ip_address,
    ))
