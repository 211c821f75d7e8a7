"""
Receipt issuance engine - Multi-Tenant.

Decides when an order needs a sale or refund receipt and allocates gap-free,
per-tenant receipt numbers.

Numbering: the new id is computed as MAX(id)+1 inside the INSERT statement,
after the tenant row has been locked FOR UPDATE. The unique key
(tenant_id, order_id, type, refund_key) is the authoritative idempotency
guard; an existing receipt is detected before any number is allocated.
"""
import calendar
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import IntegrityError

from fiscal_sync.exceptions import (
    BusinessLogicError, NotFoundError, NumberingConflict, ReceiptAlreadyExists
)
from fiscal_sync.models import (
    AuditAction, FiscalSettings, Receipt, Tenant,
    RECEIPT_TYPE_SALE, RECEIPT_TYPE_REFUND, RECEIPT_STATUS_ISSUED,
    SALE_REFUND_KEY, DEFAULT_REFUND_KEY, DEFAULT_RETURN_PAYMENT_TYPE
)
from fiscal_sync.services.audit_service import log_action
from fiscal_sync.services.order_normalizer import CanonicalOrder, ensure_utc, parse_amount
from fiscal_sync.services.payment_extractors import extract_transaction_ref, is_cod_order

logger = logging.getLogger(__name__)

FULL_REFUND_PAYMENT_STATUSES = ('REFUNDED', 'FULLY_REFUNDED')
PARTIAL_REFUND_PAYMENT_STATUSES = ('PARTIALLY_REFUNDED',)


class SkipReason(enum.Enum):
    """Why an order did not get a receipt on this pass."""
    NOT_PAID = 'not_paid'
    CANCELLED = 'cancelled'
    ZERO_TOTAL = 'zero_total'
    COD_DISABLED = 'cod_disabled'
    MISSING_TRANSACTION_REF = 'missing_transaction_ref'
    MISSING_FISCAL_STORE_ID = 'missing_fiscal_store_id'
    NO_START_DATE = 'no_start_date'
    BEFORE_START_DATE = 'before_start_date'
    PARTIAL_REFUND_WITHOUT_AMOUNT = 'partial_refund_without_amount'


class TransitionAction(enum.Enum):
    ISSUE_SALE = 'issue_sale'
    ISSUE_REFUND = 'issue_refund'
    SKIP = 'skip'
    NONE = 'none'


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    reason: Optional[SkipReason] = None


@dataclass(frozen=True)
class Transition:
    action: TransitionAction
    reason: Optional[SkipReason] = None
    refund_amount: Optional[Decimal] = None


@dataclass(frozen=True)
class IssueResult:
    created: bool
    receipt_id: Optional[int] = None


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------

def evaluate_sale_eligibility(order: CanonicalOrder, settings: FiscalSettings) -> Eligibility:
    """
    Check every condition a sale receipt requires, in a fixed order, and
    report the first one that fails.

    The paid timestamp falls back to the creation timestamp when the upstream
    never reported a paid date. Without a configured start date no receipt is
    issued at all.
    """
    if not order.is_paid:
        return Eligibility(False, SkipReason.NOT_PAID)
    if order.is_cancelled:
        return Eligibility(False, SkipReason.CANCELLED)
    if order.total is None or order.total <= 0:
        return Eligibility(False, SkipReason.ZERO_TOTAL)
    if is_cod_order(order.raw) and not settings.cod_receipts_enabled:
        return Eligibility(False, SkipReason.COD_DISABLED)
    if not extract_transaction_ref(order.raw):
        return Eligibility(False, SkipReason.MISSING_TRANSACTION_REF)
    if not settings.fiscal_store_id:
        return Eligibility(False, SkipReason.MISSING_FISCAL_STORE_ID)
    if settings.receipts_start_date is None:
        return Eligibility(False, SkipReason.NO_START_DATE)

    paid_at = ensure_utc(order.paid_at or order.created_at)
    start = settings.receipts_start_date
    if paid_at is None or paid_at < datetime(start.year, start.month, start.day, tzinfo=timezone.utc):
        return Eligibility(False, SkipReason.BEFORE_START_DATE)

    return Eligibility(True)


def evaluate_transition(order: CanonicalOrder, settings: FiscalSettings,
                        sale_receipt: Optional[Receipt]) -> Transition:
    """Map (payment status, lifecycle, existing sale receipt) to the action to take."""
    if sale_receipt is None:
        eligibility = evaluate_sale_eligibility(order, settings)
        if eligibility.eligible:
            return Transition(TransitionAction.ISSUE_SALE)
        return Transition(TransitionAction.SKIP, eligibility.reason)

    if order.payment_status in FULL_REFUND_PAYMENT_STATUSES or order.is_cancelled:
        return Transition(TransitionAction.ISSUE_REFUND)
    if order.payment_status in PARTIAL_REFUND_PAYMENT_STATUSES:
        # Partial amounts arrive with explicit refund events, not order snapshots
        return Transition(TransitionAction.SKIP, SkipReason.PARTIAL_REFUND_WITHOUT_AMOUNT)
    return Transition(TransitionAction.NONE)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def get_receipt(session, tenant_id: int, receipt_id: int) -> Optional[Receipt]:
    return session.query(Receipt).filter(
        Receipt.tenant_id == tenant_id,
        Receipt.id == receipt_id
    ).first()


def find_receipt(session, tenant_id: int, order_id: str, receipt_type: str,
                 refund_key: str = SALE_REFUND_KEY) -> Optional[Receipt]:
    return session.query(Receipt).filter(
        Receipt.tenant_id == tenant_id,
        Receipt.order_id == str(order_id),
        Receipt.type == receipt_type,
        Receipt.refund_key == refund_key
    ).first()


def get_sale_receipt(session, tenant_id: int, order_id: str) -> Optional[Receipt]:
    return find_receipt(session, tenant_id, order_id, RECEIPT_TYPE_SALE, SALE_REFUND_KEY)


def list_refunds_for_sale(session, tenant_id: int, sale_receipt_id: int) -> List[Receipt]:
    return session.query(Receipt).filter(
        Receipt.tenant_id == tenant_id,
        Receipt.type == RECEIPT_TYPE_REFUND,
        Receipt.reference_receipt_id == sale_receipt_id
    ).order_by(Receipt.id.asc()).all()


def refunded_total(session, tenant_id: int, sale_receipt_id: int) -> Decimal:
    return sum(
        (r.refund_amount or Decimal('0') for r in list_refunds_for_sale(session, tenant_id, sale_receipt_id)),
        Decimal('0')
    )


def refundable_amount(session, tenant_id: int, sale: Receipt) -> Optional[Decimal]:
    """What is left to refund on a sale receipt; None when the sale total is unknown."""
    sale_total = parse_amount((sale.payload or {}).get('total'))
    if sale_total is None:
        return None
    return sale_total - refunded_total(session, tenant_id, sale.id)


# ---------------------------------------------------------------------------
# Allocation
# ---------------------------------------------------------------------------

def _lock_tenant(session, tenant_id: int) -> None:
    """Serialize receipt writers of one tenant (no-op lock on SQLite)."""
    locked = session.query(Tenant.id).filter(Tenant.id == tenant_id).with_for_update().first()
    if locked is None:
        raise NotFoundError(f"Tenant {tenant_id} not found")


def _allocate_receipt(session, tenant_id: int, order_id: str, receipt_type: str,
                      refund_key: str, values: Dict) -> Receipt:
    """
    Insert a receipt whose id is MAX(id)+1 for the tenant.

    Raises ReceiptAlreadyExists when the (order, type, refund_key) receipt is
    already there. A unique violation without such a receipt means a
    concurrent writer took the number; that is retried once, then surfaced
    as NumberingConflict.
    """
    next_id = (
        select(func.coalesce(func.max(Receipt.id), 0) + 1)
        .where(Receipt.tenant_id == tenant_id)
        .scalar_subquery()
    )

    for attempt in (1, 2):
        _lock_tenant(session, tenant_id)

        existing = find_receipt(session, tenant_id, order_id, receipt_type, refund_key)
        if existing is not None:
            raise ReceiptAlreadyExists(order_id, receipt_type, existing.id)

        stmt = insert(Receipt.__table__).values(
            tenant_id=tenant_id,
            id=next_id,
            order_id=str(order_id),
            type=receipt_type,
            refund_key=refund_key,
            status=RECEIPT_STATUS_ISSUED,
            **values
        )
        try:
            with session.begin_nested():
                session.execute(stmt)
        except IntegrityError:
            existing = find_receipt(session, tenant_id, order_id, receipt_type, refund_key)
            if existing is not None:
                raise ReceiptAlreadyExists(order_id, receipt_type, existing.id)
            if attempt == 2:
                raise NumberingConflict(tenant_id, order_id)
            logger.warning(f"[RECEIPTS] Number collision for tenant {tenant_id}, order {order_id}; retrying")
            continue

        receipt = find_receipt(session, tenant_id, order_id, receipt_type, refund_key)
        logger.info(f"[RECEIPTS] Allocated {receipt_type} receipt #{receipt.id} for order {order_id} (tenant {tenant_id})")
        return receipt

    raise NumberingConflict(tenant_id, order_id)


# ---------------------------------------------------------------------------
# Issuance
# ---------------------------------------------------------------------------

def issue_sale_receipt(session, tenant, order: CanonicalOrder,
                       issued_at: Optional[datetime] = None) -> IssueResult:
    """
    Issue the sale receipt of an order (tenant-scoped). Idempotent: a second
    call returns created=False with the existing receipt number.
    Commits the session.
    """
    tenant_id = tenant.id if isinstance(tenant, Tenant) else int(tenant)
    if not order.id:
        raise BusinessLogicError("Cannot issue a receipt for an order without an id")

    values = {
        'issued_at': ensure_utc(issued_at) or datetime.now(timezone.utc),
        'payload': order.to_snapshot(),
        'reference_receipt_id': None,
        'refund_amount': None,
        'return_payment_type': None,
    }

    try:
        receipt = _allocate_receipt(session, tenant_id, order.id, RECEIPT_TYPE_SALE, SALE_REFUND_KEY, values)
    except ReceiptAlreadyExists as e:
        session.commit()
        logger.info(f"[RECEIPTS] Sale receipt for order {order.id} already exists (#{e.receipt_id})")
        return IssueResult(created=False, receipt_id=e.receipt_id)

    log_action(
        session, tenant_id, AuditAction.RECEIPT_ISSUED,
        order_id=order.id, receipt_id=receipt.id,
        details={'total': order.total, 'currency': order.currency}
    )
    session.commit()
    return IssueResult(created=True, receipt_id=receipt.id)


def issue_refund_receipt(session, tenant_id: int, order_id: str, refund_amount=None,
                         refund_key: str = DEFAULT_REFUND_KEY, reason: Optional[str] = None,
                         issued_at: Optional[datetime] = None) -> IssueResult:
    """
    Issue a refund receipt referencing the order's sale receipt.

    refund_amount None means a full refund of whatever has not been refunded
    yet. refund_key identifies the refund (upstream refund id for partial
    refunds); replaying the same key is a no-op. Commits the session.

    Raises:
        NotFoundError: the order has no sale receipt
        BusinessLogicError: the amount is not positive or exceeds the sale total
    """
    tenant_id = tenant_id.id if isinstance(tenant_id, Tenant) else int(tenant_id)
    refund_key = (refund_key or DEFAULT_REFUND_KEY).strip()[:64]

    sale = get_sale_receipt(session, tenant_id, order_id)
    if sale is None:
        raise NotFoundError(
            f"No sale receipt for order {order_id}",
            {'order_id': order_id, 'tenant_id': tenant_id}
        )

    existing = find_receipt(session, tenant_id, order_id, RECEIPT_TYPE_REFUND, refund_key)
    if existing is not None:
        logger.info(f"[RECEIPTS] Refund '{refund_key}' for order {order_id} already exists (#{existing.id})")
        return IssueResult(created=False, receipt_id=existing.id)

    sale_total = parse_amount((sale.payload or {}).get('total'))
    already_refunded = refunded_total(session, tenant_id, sale.id)

    if refund_amount is None:
        if sale_total is None:
            raise BusinessLogicError(f"Sale receipt #{sale.id} has no total; pass an explicit refund amount")
        amount = sale_total - already_refunded
    else:
        amount = parse_amount(refund_amount)
        if amount is None:
            raise BusinessLogicError(f"Invalid refund amount: {refund_amount!r}")

    if amount <= 0:
        raise BusinessLogicError(
            f"Refund amount must be positive (order {order_id}, amount {amount})",
            payload={'order_id': order_id, 'already_refunded': str(already_refunded)}
        )
    if sale_total is not None and already_refunded + amount > sale_total:
        raise BusinessLogicError(
            f"Refunds for order {order_id} would exceed the sale total {sale_total}",
            payload={'order_id': order_id, 'already_refunded': str(already_refunded)}
        )

    payload = dict(sale.payload or {})
    payload['refund'] = {
        'amount': str(amount),
        'reason': reason,
        'saleReceiptId': sale.id,
        'refundKey': refund_key,
    }
    values = {
        'issued_at': ensure_utc(issued_at) or datetime.now(timezone.utc),
        'payload': payload,
        'reference_receipt_id': sale.id,
        'refund_amount': amount,
        'return_payment_type': DEFAULT_RETURN_PAYMENT_TYPE,
    }

    try:
        receipt = _allocate_receipt(session, tenant_id, order_id, RECEIPT_TYPE_REFUND, refund_key, values)
    except ReceiptAlreadyExists as e:
        session.commit()
        return IssueResult(created=False, receipt_id=e.receipt_id)

    log_action(
        session, tenant_id, AuditAction.REFUND_ISSUED,
        order_id=str(order_id), receipt_id=receipt.id,
        details={'amount': amount, 'sale_receipt_id': sale.id, 'reason': reason, 'refund_key': refund_key}
    )
    session.commit()
    return IssueResult(created=True, receipt_id=receipt.id)


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------

def _renumber(session, tenant_id: int) -> Dict[int, int]:
    """Compact ids to 1..N by (issued_at, id); returns {old: new} for the ids that moved."""
    receipts = session.query(Receipt.id, Receipt.issued_at).filter(
        Receipt.tenant_id == tenant_id
    ).order_by(Receipt.issued_at.asc(), Receipt.id.asc()).all()

    mapping = {row.id: position for position, row in enumerate(receipts, start=1)}
    changed = {old: new for old, new in mapping.items() if old != new}
    if not changed:
        return {}

    table = Receipt.__table__
    moved = list(changed.keys())

    # Phase 1: park moved ids and their references on negative values
    session.execute(
        update(table)
        .where(table.c.tenant_id == tenant_id, table.c.id.in_(moved))
        .values(id=-table.c.id)
    )
    session.execute(
        update(table)
        .where(table.c.tenant_id == tenant_id, table.c.reference_receipt_id.in_(moved))
        .values(reference_receipt_id=-table.c.reference_receipt_id)
    )

    # Phase 2: assign final numbers
    for old, new in changed.items():
        session.execute(
            update(table)
            .where(table.c.tenant_id == tenant_id, table.c.id == -old)
            .values(id=new)
        )
        session.execute(
            update(table)
            .where(table.c.tenant_id == tenant_id, table.c.reference_receipt_id == -old)
            .values(reference_receipt_id=new)
        )

    session.expire_all()
    return changed


def renumber_receipts(session, tenant_id: int, user_id: Optional[str] = None) -> Dict[int, int]:
    """
    Reassign receipt numbers 1..N oldest first and repoint refund references
    through the same map, all in one transaction.
    """
    try:
        _lock_tenant(session, tenant_id)
        changed = _renumber(session, tenant_id)
        if changed:
            log_action(
                session, tenant_id, AuditAction.RECEIPTS_RENUMBERED,
                details={'changed': {str(old): new for old, new in changed.items()}},
                user_id=user_id
            )
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info(f"[RECEIPTS] Renumbered {len(changed)} receipts for tenant {tenant_id}")
    return changed


def cancel_receipt(session, tenant_id: int, receipt_id: int, renumber: bool = False,
                   user_id: Optional[str] = None) -> Dict:
    """
    Delete a receipt (administrative override). Cancelling a sale also
    deletes the refunds that reference it. With renumber=True the numbering
    is compacted in the same transaction.
    """
    try:
        _lock_tenant(session, tenant_id)
        receipt = get_receipt(session, tenant_id, receipt_id)
        if receipt is None:
            raise NotFoundError(f"Receipt #{receipt_id} not found", {'receipt_id': receipt_id})

        deleted = [receipt.id]
        if receipt.is_sale:
            for refund in list_refunds_for_sale(session, tenant_id, receipt.id):
                deleted.append(refund.id)
                session.delete(refund)

        order_id = receipt.order_id
        receipt_type = receipt.type
        session.delete(receipt)
        session.flush()

        log_action(
            session, tenant_id, AuditAction.RECEIPT_CANCELLED,
            order_id=order_id, receipt_id=receipt_id,
            details={'type': receipt_type, 'deleted': deleted, 'renumber': renumber},
            user_id=user_id
        )

        changed = _renumber(session, tenant_id) if renumber else {}
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info(f"[RECEIPTS] Cancelled receipt #{receipt_id} ({receipt_type}) for tenant {tenant_id}; deleted {deleted}")
    return {'deleted': deleted, 'renumbered': changed}


def find_numbering_gaps(session, tenant_id: int) -> Dict:
    """Operator preview: missing numbers and what a renumbering pass would change."""
    rows = session.query(Receipt.id, Receipt.issued_at).filter(
        Receipt.tenant_id == tenant_id
    ).order_by(Receipt.issued_at.asc(), Receipt.id.asc()).all()

    ids = sorted(row.id for row in rows)
    present = set(ids)
    max_id = ids[-1] if ids else 0
    missing = [number for number in range(1, max_id + 1) if number not in present]
    preview = {
        row.id: position
        for position, row in enumerate(rows, start=1)
        if row.id != position
    }
    return {
        'count': len(ids),
        'max_id': max_id,
        'missing': missing,
        'has_gaps': bool(missing),
        'renumber_preview': preview,
    }


def list_receipts_for_month(session, tenant_id: int, year: int, month: int,
                            receipt_type: Optional[str] = None) -> List[Receipt]:
    """Receipts issued in a calendar month (UTC), ordered by number. Input of the monthly NRA audit export."""
    if not 1 <= month <= 12:
        raise BusinessLogicError(f"Invalid month: {month}")
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    last_day = calendar.monthrange(year, month)[1]
    end = datetime(year, month, last_day, 23, 59, 59, 999999, tzinfo=timezone.utc)

    query = session.query(Receipt).filter(
        Receipt.tenant_id == tenant_id,
        Receipt.issued_at >= start,
        Receipt.issued_at <= end
    )
    if receipt_type:
        if receipt_type not in (RECEIPT_TYPE_SALE, RECEIPT_TYPE_REFUND):
            raise BusinessLogicError(f"Invalid receipt type: {receipt_type}")
        query = query.filter(Receipt.type == receipt_type)
    return query.order_by(Receipt.id.asc()).all()
