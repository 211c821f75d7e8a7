"""
Audit logging service for fiscal actions (receipts, refunds, sync runs).
"""
import json
import logging
from typing import Any, Dict, List, Optional

from flask import has_request_context, request

from fiscal_sync.models import AuditLog, AuditAction

logger = logging.getLogger(__name__)

SYSTEM_USER = 'system'


def _json_safe(details: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not details:
        return None
    try:
        return json.loads(json.dumps(details, default=str))
    except (TypeError, ValueError) as e:
        logger.warning(f"Failed to serialize audit details: {e}")
        return {'raw': str(details)}


def log_action(
    session,
    tenant_id: int,
    action: AuditAction,
    order_id: str = None,
    receipt_id: int = None,
    details: dict = None,
    user_id: str = None
) -> AuditLog:
    """
    Add an audit entry to the session.

    Args:
        session: Database session
        tenant_id: Tenant the action belongs to
        action: AuditAction enum value
        order_id: Upstream order id, when the action concerns one order
        receipt_id: Receipt number, when the action concerns one receipt
        details: Dict with additional details (stored as JSON)
        user_id: Operator id; defaults to 'system' for automated runs

    Note: Caller is responsible for committing the session.
    """
    ip_address = None
    if has_request_context():
        ip_address = request.headers.get('X-Forwarded-For', request.remote_addr or '').split(',')[0].strip() or None

    entry = AuditLog(
        tenant_id=tenant_id,
        action=action.value,
        order_id=order_id,
        receipt_id=receipt_id,
        details=_json_safe(details),
        user_id=user_id or SYSTEM_USER,
        ip_address=ip_address,
    )
    session.add(entry)

    logger.info(f"Audit log created: {action.value} tenant {tenant_id} order {order_id} receipt {receipt_id}")
    return entry


def get_audit_logs(
    session,
    tenant_id: int,
    limit: int = 100,
    offset: int = 0,
    action_filter: AuditAction = None,
    order_id_filter: str = None
) -> List[AuditLog]:
    """
    Retrieve audit logs for a tenant with optional filters, newest first.
    """
    query = session.query(AuditLog).filter(
        AuditLog.tenant_id == tenant_id
    )

    if action_filter:
        query = query.filter(AuditLog.action == action_filter.value)

    if order_id_filter:
        query = query.filter(AuditLog.order_id == order_id_filter)

    query = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    query = query.limit(limit).offset(offset)

    return query.all()
