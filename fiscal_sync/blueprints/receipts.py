"""
Receipts blueprint - operator actions on fiscal receipts.

All routes require `Authorization: Bearer <CRON_SECRET>`. Every action is
tenant-scoped through `tenant_id` (or `site_id`) in the body or query string.
"""
import logging
import re

from flask import Blueprint, current_app, g, jsonify

from fiscal_sync.database import get_session
from fiscal_sync.decorators.cron_auth import require_cron_secret
from fiscal_sync.exceptions import BusinessLogicError
from fiscal_sync.models import DEFAULT_REFUND_KEY, AuditAction
from fiscal_sync.services.audit_service import get_audit_logs
from fiscal_sync.services.receipt_service import (
    cancel_receipt, find_numbering_gaps, issue_refund_receipt,
    list_receipts_for_month, renumber_receipts
)
from fiscal_sync.services.refund_queue_service import process_pending_refunds
from fiscal_sync.services.tenant_service import get_tenant
from fiscal_sync.utils.request_params import bool_param, int_param, request_params

logger = logging.getLogger(__name__)

receipts_bp = Blueprint('receipts', __name__)

MONTH_PATTERN = re.compile(r'^(\d{4})-(\d{2})$')


def _tenant(session, params):
    return get_tenant(session, params.get('tenant_id'), params.get('site_id'))


@receipts_bp.route('/receipts/refund', methods=['POST'])
@require_cron_secret
def refund():
    """Issue a refund receipt for an order that already has a sale receipt."""
    session = get_session()
    params = request_params()
    tenant = _tenant(session, params)

    order_id = params.get('order_id')
    if not order_id:
        raise BusinessLogicError("'order_id' is required")

    result = issue_refund_receipt(
        session, tenant.id, str(order_id),
        refund_amount=params.get('amount'),
        refund_key=params.get('refund_key') or DEFAULT_REFUND_KEY,
        reason=params.get('reason'),
    )
    return jsonify({'status': 'ok', 'created': result.created, 'receipt_id': result.receipt_id}), \
        201 if result.created else 200


@receipts_bp.route('/receipts/cancel', methods=['POST'])
@require_cron_secret
def cancel():
    session = get_session()
    params = request_params()
    tenant = _tenant(session, params)

    outcome = cancel_receipt(
        session, tenant.id, int_param(params, 'receipt_id', required=True),
        renumber=bool_param(params, 'renumber'),
        user_id=g.get('operator')
    )
    return jsonify({
        'status': 'ok',
        'deleted': outcome['deleted'],
        'renumbered': {str(old): new for old, new in outcome['renumbered'].items()},
    })


@receipts_bp.route('/receipts/renumber', methods=['POST'])
@require_cron_secret
def renumber():
    session = get_session()
    params = request_params()
    tenant = _tenant(session, params)

    changed = renumber_receipts(session, tenant.id, user_id=g.get('operator'))
    return jsonify({
        'status': 'ok',
        'changed': len(changed),
        'mapping': {str(old): new for old, new in changed.items()},
    })


@receipts_bp.route('/receipts/gaps', methods=['GET'])
@require_cron_secret
def gaps():
    """Preview numbering gaps and what a renumbering pass would change."""
    session = get_session()
    tenant = _tenant(session, request_params())

    report = find_numbering_gaps(session, tenant.id)
    report['renumber_preview'] = {str(old): new for old, new in report['renumber_preview'].items()}
    return jsonify({'status': 'ok', **report})


@receipts_bp.route('/receipts/monthly', methods=['GET'])
@require_cron_secret
def monthly():
    """Receipts issued in a calendar month (?month=YYYY-MM), input of the audit export."""
    session = get_session()
    params = request_params()
    tenant = _tenant(session, params)

    match = MONTH_PATTERN.match(str(params.get('month') or ''))
    if not match:
        raise BusinessLogicError("'month' must be formatted as YYYY-MM")
    year, month = int(match.group(1)), int(match.group(2))

    receipts = list_receipts_for_month(session, tenant.id, year, month, params.get('type'))
    items = []
    for receipt in receipts:
        item = receipt.to_dict()
        item['payload'] = receipt.payload
        items.append(item)

    return jsonify({'status': 'ok', 'month': f"{year:04d}-{month:02d}", 'count': len(items), 'receipts': items})


@receipts_bp.route('/receipts/audit', methods=['GET'])
@require_cron_secret
def audit_trail():
    """Audit entries for a tenant, newest first (?action=receipt.issued&order_id=...)."""
    session = get_session()
    params = request_params()
    tenant = _tenant(session, params)

    action = None
    if params.get('action'):
        try:
            action = AuditAction(params.get('action'))
        except ValueError:
            raise BusinessLogicError(f"Unknown audit action: {params.get('action')}")

    limit = int_param(params, 'limit') or 100
    if not 1 <= limit <= 500:
        raise BusinessLogicError("'limit' must be between 1 and 500")

    logs = get_audit_logs(
        session, tenant.id,
        limit=limit,
        offset=int_param(params, 'offset') or 0,
        action_filter=action,
        order_id_filter=params.get('order_id'),
    )
    return jsonify({'status': 'ok', 'count': len(logs), 'entries': [log.to_dict() for log in logs]})


@receipts_bp.route('/cron/process-refunds', methods=['POST'])
@require_cron_secret
def process_refunds():
    """Retry refunds that were queued before their sale receipt existed."""
    session = get_session()
    params = request_params()
    tenant_id = None
    if params.get('tenant_id') is not None or params.get('site_id'):
        tenant_id = _tenant(session, params).id

    stats = process_pending_refunds(
        session, tenant_id, max_attempts=current_app.config.get('REFUND_MAX_ATTEMPTS', 3)
    )
    logger.info(f"[REFUNDS] Processed pending refunds: {stats}")
    return jsonify({'status': 'ok', **stats})
