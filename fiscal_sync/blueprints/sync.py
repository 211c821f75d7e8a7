"""
Sync blueprint - cron entry points for the order sync.

All routes require `Authorization: Bearer <CRON_SECRET>`.
"""
import logging

from flask import Blueprint, jsonify

from fiscal_sync.database import get_session
from fiscal_sync.decorators.cron_auth import require_cron_secret
from fiscal_sync.exceptions import BusinessLogicError
from fiscal_sync.services.sync_service import reevaluate_stored_orders, run_backfill, run_incremental_sync
from fiscal_sync.services.sync_state_service import get_sync_state
from fiscal_sync.services.tenant_service import get_tenant, list_active_tenants
from fiscal_sync.services.wix_client import get_wix_client
from fiscal_sync.utils.request_params import bool_param, int_param, request_params

logger = logging.getLogger(__name__)

sync_bp = Blueprint('sync', __name__, url_prefix='/sync')


def _tenants(session, params):
    if params.get('tenant_id') is not None or params.get('site_id'):
        return [get_tenant(session, params.get('tenant_id'), params.get('site_id'))]
    return list_active_tenants(session)


@sync_bp.route('/run', methods=['POST'])
@require_cron_secret
def run_sync():
    """Incremental sync: recent window, few pages per tenant."""
    session = get_session()
    params = request_params()
    client = get_wix_client()

    results = []
    for tenant in _tenants(session, params):
        result = run_incremental_sync(
            session, client, tenant,
            window_days=int_param(params, 'window_days'),
            max_pages=int_param(params, 'max_pages'),
            limit=int_param(params, 'limit'),
        )
        results.append(result.to_dict())

    logger.info(f"[SYNC] Incremental run finished for {len(results)} tenants")
    return jsonify({'status': 'ok', 'results': results})


@sync_bp.route('/backfill', methods=['POST'])
@require_cron_secret
def backfill():
    """Backfill one tenant from a start date; call repeatedly until status is 'done'."""
    session = get_session()
    params = request_params()
    tenant = get_tenant(session, params.get('tenant_id'), params.get('site_id'))

    result = run_backfill(
        session, get_wix_client(), tenant,
        start_date=params.get('start_date'),
        max_pages=int_param(params, 'max_pages'),
        limit=int_param(params, 'limit'),
        paid_only=bool_param(params, 'paid_only'),
        offset=int_param(params, 'offset'),
    )
    return jsonify({'status': 'ok', 'result': result.to_dict()})


@sync_bp.route('/state', methods=['GET'])
@require_cron_secret
def state():
    session = get_session()
    params = request_params()
    tenant = get_tenant(session, params.get('tenant_id'), params.get('site_id'))
    sync_state = get_sync_state(session, tenant.id)
    return jsonify({
        'status': 'ok',
        'tenant_id': tenant.id,
        'state': sync_state.to_dict() if sync_state else None,
    })


@sync_bp.route('/reevaluate', methods=['POST'])
@require_cron_secret
def reevaluate():
    """Re-run receipt decisions over stored orders in [start, end) without calling Wix."""
    session = get_session()
    params = request_params()
    tenant = get_tenant(session, params.get('tenant_id'), params.get('site_id'))

    if not params.get('start') or not params.get('end'):
        raise BusinessLogicError("'start' and 'end' are required (YYYY-MM-DD)")

    result = reevaluate_stored_orders(session, tenant, params.get('start'), params.get('end'))
    return jsonify({'status': 'ok', 'result': result.to_dict()})
