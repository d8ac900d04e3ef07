import logging
from typing import Any, Dict, Optional

from .models import AuditLog

logger = logging.getLogger('compliance.audit')


def record_audit_event(
    action: str,
    actor,
    content_type: str,
    object_id,
    content: Dict[str, Any] = None,
    ip_address: str = None,
) -> Optional[AuditLog]:
    """
    Append one entry to the audit trail.

    A failure here is logged and swallowed: the change being audited has
    already been committed and must not be reported as failed.
    """
    try:
        entry = AuditLog.objects.create(
            action=action,
            actor=actor if actor is not None and getattr(actor, 'pk', None) else None,
            content_type=content_type,
            object_id=str(object_id),
            content=content or {},
            ip_address=ip_address,
        )
        logger.info(
            f"{action} {content_type}({object_id}) by "
            f"{getattr(actor, 'username', None) or 'system'}"
        )
        return entry

    except Exception as e:
        logger.error(f"Failed to record audit event {action} {content_type}({object_id}): {e}")
        return None


def record_instance_event(action: str, actor, instance, content=None, ip_address=None):
    return record_audit_event(
        action, actor, instance.__class__.__name__, instance.pk, content, ip_address
    )
