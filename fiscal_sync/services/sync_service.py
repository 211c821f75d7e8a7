"""
Sync orchestrator - pages of Wix orders through normalize, enrich, store and
receipt issuance.

Backfill and incremental sync are the same function with different
parameters; only the window start and the page budget differ. Each
invocation is bounded by max_pages and persists its offset so the next
invocation resumes instead of restarting.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from flask import current_app

from fiscal_sync.blueprints.metrics import (
    orders_synced_total, receipts_issued_total, receipts_skipped_total, sync_runs_total
)
from fiscal_sync.exceptions import BusinessLogicError, UpstreamError
from fiscal_sync.models import (
    AuditAction, FiscalSettings, get_fiscal_settings,
    RECEIPT_TYPE_SALE, RECEIPT_TYPE_REFUND,
    SYNC_STATUS_RUNNING, SYNC_STATUS_PARTIAL, SYNC_STATUS_DONE, SYNC_STATUS_ERROR
)
from fiscal_sync.services.audit_service import log_action
from fiscal_sync.services.enrichment_service import PaymentEnrichmentResolver
from fiscal_sync.services.order_normalizer import (
    ORDER_ID_PATHS, PROVENANCE_BACKFILL, CanonicalOrder, first_path, normalize_order
)
from fiscal_sync.services.order_store import canonical_from_row, list_orders_in_range, upsert_order
from fiscal_sync.services.receipt_service import (
    TransitionAction, evaluate_transition, get_sale_receipt,
    issue_refund_receipt, issue_sale_receipt, refundable_amount
)
from fiscal_sync.services.sync_state_service import get_sync_state, resume_offset, update_sync_state

logger = logging.getLogger(__name__)


@dataclass
class OrderOutcome:
    """What happened to one order in the pipeline."""
    order_id: Optional[str]
    action: str = TransitionAction.NONE.value
    receipt_id: Optional[int] = None
    created: bool = False
    skip_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'order_id': self.order_id,
            'action': self.action,
            'receipt_id': self.receipt_id,
            'created': self.created,
            'skip_reason': self.skip_reason,
        }


@dataclass
class SyncResult:
    tenant_id: int
    start_date: date
    status: str = SYNC_STATUS_RUNNING
    total: int = 0
    pages: int = 0
    receipts_issued: int = 0
    refunds_issued: int = 0
    receipts_skipped: int = 0
    skip_reasons: Dict[str, int] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    start_offset: int = 0
    next_offset: int = 0
    cursor: Optional[str] = None

    def record(self, outcome: OrderOutcome) -> None:
        self.total += 1
        if outcome.created and outcome.action == TransitionAction.ISSUE_SALE.value:
            self.receipts_issued += 1
        elif outcome.created and outcome.action == TransitionAction.ISSUE_REFUND.value:
            self.refunds_issued += 1
        elif outcome.skip_reason:
            self.receipts_skipped += 1
            self.skip_reasons[outcome.skip_reason] = self.skip_reasons.get(outcome.skip_reason, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tenant_id': self.tenant_id,
            'start_date': self.start_date.isoformat(),
            'status': self.status,
            'total': self.total,
            'pages': self.pages,
            'receipts_issued': self.receipts_issued,
            'refunds_issued': self.refunds_issued,
            'receipts_skipped': self.receipts_skipped,
            'skip_reasons': dict(self.skip_reasons),
            'errors': list(self.errors),
            'start_offset': self.start_offset,
            'next_offset': self.next_offset,
            'cursor': self.cursor,
        }


def _as_date(value) -> date:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).date() if value.tzinfo else value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise BusinessLogicError(f"Invalid start date: {value!r}")


# ---------------------------------------------------------------------------
# Per-order pipeline
# ---------------------------------------------------------------------------

def process_order_payload(session, client, tenant, settings: Optional[FiscalSettings], raw: Dict[str, Any],
                          provenance: str = PROVENANCE_BACKFILL,
                          batch_payments: Optional[List[Dict[str, Any]]] = None,
                          resolver: Optional[PaymentEnrichmentResolver] = None) -> OrderOutcome:
    """
    Normalize, enrich, store and (when due) issue a receipt for one raw order.

    Shared by the backfill loop and the webhook path so both produce the same
    stored row for the same upstream order.
    """
    order_id = first_path(raw, ORDER_ID_PATHS) if isinstance(raw, dict) else None
    if not order_id:
        raise BusinessLogicError("Order payload has no id")

    if settings is None:
        settings = get_fiscal_settings(session, tenant.id)
    if resolver is None:
        resolver = PaymentEnrichmentResolver(client)

    enriched = resolver.enrich(tenant, raw, batch_payments)
    order = normalize_order(enriched, provenance)

    upsert_order(session, tenant.id, order)
    session.commit()
    orders_synced_total.labels(source=provenance).inc()

    return apply_transition(session, tenant, settings, order)


def apply_transition(session, tenant, settings: FiscalSettings, order: CanonicalOrder) -> OrderOutcome:
    """Issue whatever receipt the order's current state calls for."""
    outcome = OrderOutcome(order_id=order.id)
    sale = get_sale_receipt(session, tenant.id, order.id)
    transition = evaluate_transition(order, settings, sale)
    outcome.action = transition.action.value

    if transition.action == TransitionAction.ISSUE_SALE:
        result = issue_sale_receipt(session, tenant, order)
        outcome.receipt_id = result.receipt_id
        outcome.created = result.created
        if result.created:
            receipts_issued_total.labels(type=RECEIPT_TYPE_SALE).inc()

    elif transition.action == TransitionAction.ISSUE_REFUND:
        remaining = refundable_amount(session, tenant.id, sale)
        if remaining is not None and remaining <= 0:
            outcome.action = TransitionAction.NONE.value
            return outcome
        result = issue_refund_receipt(
            session, tenant.id, order.id,
            refund_amount=transition.refund_amount,
            reason=f"order {order.payment_status or order.status}".lower()
        )
        outcome.receipt_id = result.receipt_id
        outcome.created = result.created
        if result.created:
            receipts_issued_total.labels(type=RECEIPT_TYPE_REFUND).inc()

    elif transition.action == TransitionAction.SKIP:
        outcome.skip_reason = transition.reason.value
        receipts_skipped_total.labels(reason=outcome.skip_reason).inc()
        logger.debug(f"[SYNC] Order {order.id}: no receipt ({outcome.skip_reason})")

    return outcome


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

def sync_orders_for_tenant(session, client, tenant, start_date, limit: int = 100, max_pages: int = 5,
                           paid_only: bool = False, offset: Optional[int] = None, resume: bool = True,
                           provenance: str = PROVENANCE_BACKFILL, payments_batch_limit: int = 500) -> SyncResult:
    """
    Sync one tenant's orders created on or after start_date.

    Per-order failures are collected in result.errors. An upstream failure
    while fetching a page stops the run with status 'partial' and the offset
    of the last completed page, so a later call resumes there. Any other
    failure sets status 'error'.
    """
    start_date = _as_date(start_date)
    settings = get_fiscal_settings(session, tenant.id)

    if offset is None and resume:
        offset = resume_offset(get_sync_state(session, tenant.id), start_date)
        if offset:
            logger.info(f"[SYNC] Resuming tenant {tenant.id} from offset {offset}")
    offset = int(offset or 0)

    result = SyncResult(tenant_id=tenant.id, start_date=start_date, start_offset=offset, next_offset=offset)

    update_sync_state(session, tenant.id, cursor=str(offset), status=SYNC_STATUS_RUNNING,
                      last_error=None, start_date=start_date, pages_done=0)
    log_action(session, tenant.id, AuditAction.SYNC_STARTED,
               details={'start_date': start_date.isoformat(), 'offset': offset, 'max_pages': max_pages})
    session.commit()

    batch_payments = None
    try:
        batch_payments = client.fetch_all_payments(tenant, limit=payments_batch_limit)
    except UpstreamError as e:
        logger.warning(f"[SYNC] Batch payments unavailable for tenant {tenant.id}: {e.message}")
    resolver = PaymentEnrichmentResolver(client, batch_payments)

    current_offset = offset
    has_more = True

    try:
        while has_more and result.pages < max_pages:
            page = client.fetch_orders_page(
                tenant, start_date, offset=current_offset, limit=limit,
                payment_status='PAID' if paid_only else None
            )
            for raw in page.orders:
                _process_in_run(session, client, tenant, settings, raw, provenance, resolver, result)

            current_offset = page.next_offset
            has_more = page.has_more
            result.pages += 1
            result.next_offset = current_offset

            update_sync_state(session, tenant.id, cursor=str(current_offset), pages_done=result.pages)
            session.commit()

    except UpstreamError as e:
        session.rollback()
        logger.warning(f"[SYNC] Upstream failure for tenant {tenant.id} at offset {current_offset}: {e.message}")
        result.status = SYNC_STATUS_PARTIAL
        result.cursor = str(current_offset)
        result.errors.append({'order_id': None, 'error': e.message, 'upstream_status': e.upstream_status})
        update_sync_state(session, tenant.id, cursor=result.cursor, status=SYNC_STATUS_PARTIAL,
                          last_error=e.message)
        session.commit()
        sync_runs_total.labels(status=result.status).inc()
        return result

    except Exception as e:
        session.rollback()
        logger.exception(f"[SYNC] Sync failed for tenant {tenant.id}: {e}")
        result.status = SYNC_STATUS_ERROR
        result.cursor = str(current_offset)
        result.errors.append({'order_id': None, 'error': str(e)})
        update_sync_state(session, tenant.id, cursor=result.cursor, status=SYNC_STATUS_ERROR,
                          last_error=str(e))
        session.commit()
        sync_runs_total.labels(status=result.status).inc()
        return result

    result.cursor = str(current_offset) if has_more else None
    result.status = SYNC_STATUS_PARTIAL if has_more else SYNC_STATUS_DONE

    update_sync_state(session, tenant.id, cursor=result.cursor, status=result.status, last_error=None)
    log_action(session, tenant.id, AuditAction.SYNC_COMPLETED, details=result.to_dict())
    session.commit()
    sync_runs_total.labels(status=result.status).inc()

    logger.info(
        f"[SYNC] Tenant {tenant.id}: {result.total} orders, {result.receipts_issued} receipts, "
        f"{result.receipts_skipped} skipped, {len(result.errors)} errors, status {result.status}"
    )
    return result


def _process_in_run(session, client, tenant, settings, raw, provenance, resolver, result: SyncResult) -> None:
    order_id = first_path(raw, ORDER_ID_PATHS) if isinstance(raw, dict) else None
    try:
        outcome = process_order_payload(session, client, tenant, settings, raw, provenance, resolver=resolver)
    except UpstreamError:
        # Auth/transport failures are page-level
        raise
    except Exception as e:
        session.rollback()
        logger.warning(f"[SYNC] Order {order_id} failed for tenant {tenant.id}: {e}")
        result.errors.append({'order_id': order_id, 'error': str(e)})
        return
    result.record(outcome)


def reevaluate_stored_orders(session, tenant, start, end) -> SyncResult:
    """
    Re-run the receipt decision over orders already in the local mirror,
    created in [start, end). No upstream calls; used after the tenant's
    fiscal settings change (store id registered, start date moved).
    """
    start_date, end_date = _as_date(start), _as_date(end)
    if end_date <= start_date:
        raise BusinessLogicError("'end' must be after 'start'")

    settings = get_fiscal_settings(session, tenant.id)
    rows = list_orders_in_range(
        session, tenant.id,
        datetime(start_date.year, start_date.month, start_date.day, tzinfo=timezone.utc),
        datetime(end_date.year, end_date.month, end_date.day, tzinfo=timezone.utc),
    )
    result = SyncResult(tenant_id=tenant.id, start_date=start_date, pages=1)
    orders = [canonical_from_row(row) for row in rows]

    for order in orders:
        try:
            outcome = apply_transition(session, tenant, settings, order)
        except Exception as e:
            session.rollback()
            logger.warning(f"[SYNC] Re-evaluation of order {order.id} failed for tenant {tenant.id}: {e}")
            result.errors.append({'order_id': order.id, 'error': str(e)})
            continue
        result.record(outcome)

    result.status = SYNC_STATUS_DONE
    logger.info(
        f"[SYNC] Re-evaluated {result.total} stored orders for tenant {tenant.id}: "
        f"{result.receipts_issued} receipts, {result.refunds_issued} refunds"
    )
    return result


def run_backfill(session, client, tenant, start_date=None, max_pages: Optional[int] = None,
                 limit: Optional[int] = None, paid_only: bool = False, offset: Optional[int] = None) -> SyncResult:
    """Full history from the earliest configured date, many pages per call."""
    config = current_app.config
    return sync_orders_for_tenant(
        session, client, tenant,
        start_date=start_date or config.get('BACKFILL_START_DATE', '2000-01-01'),
        limit=limit or config.get('SYNC_PAGE_LIMIT', 100),
        max_pages=max_pages or config.get('BACKFILL_MAX_PAGES', 20),
        paid_only=paid_only,
        offset=offset,
        provenance=PROVENANCE_BACKFILL,
        payments_batch_limit=config.get('PAYMENTS_BATCH_LIMIT', 500),
    )


def run_incremental_sync(session, client, tenant, window_days: Optional[int] = None,
                         max_pages: Optional[int] = None, limit: Optional[int] = None) -> SyncResult:
    """Recent window only, few pages per call."""
    config = current_app.config
    window_days = window_days or config.get('INCREMENTAL_WINDOW_DAYS', 3)
    start_date = datetime.now(timezone.utc).date() - timedelta(days=window_days)
    return sync_orders_for_tenant(
        session, client, tenant,
        start_date=start_date,
        limit=limit or config.get('SYNC_PAGE_LIMIT', 100),
        max_pages=max_pages or config.get('SYNC_MAX_PAGES', 3),
        provenance=PROVENANCE_BACKFILL,
        payments_batch_limit=config.get('PAYMENTS_BATCH_LIMIT', 500),
    )
