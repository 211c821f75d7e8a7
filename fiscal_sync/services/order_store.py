"""Order persistence - idempotent upsert keyed by (tenant_id, order id)."""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite

from fiscal_sync.exceptions import BusinessLogicError
from fiscal_sync.models import WixOrder
from fiscal_sync.services.order_normalizer import CanonicalOrder, normalize_order

logger = logging.getLogger(__name__)

# Columns derived from the upstream payload; all overwritten on every sighting
DERIVED_COLUMNS = (
    'number', 'status', 'payment_status', 'created_at', 'updated_at', 'paid_at',
    'currency', 'subtotal', 'tax_total', 'shipping_total', 'discount_total', 'total',
    'customer_name', 'customer_email', 'source', 'raw',
)


def _dialect_insert(session):
    dialect = session.get_bind().dialect.name
    if dialect == 'postgresql':
        return postgresql.insert
    if dialect == 'sqlite':
        return sqlite.insert
    raise BusinessLogicError(f"Order upsert is not supported on dialect '{dialect}'", 500)


def order_values(tenant_id: int, order: CanonicalOrder) -> dict:
    return {
        'tenant_id': tenant_id,
        'id': order.id,
        'number': order.number,
        'status': order.status,
        'payment_status': order.payment_status,
        'created_at': order.created_at,
        'updated_at': order.updated_at,
        'paid_at': order.paid_at,
        'currency': order.currency,
        'subtotal': order.subtotal,
        'tax_total': order.tax_total,
        'shipping_total': order.shipping_total,
        'discount_total': order.discount_total,
        'total': order.total,
        'customer_name': order.customer_name,
        'customer_email': order.customer_email,
        'source': order.source,
        'raw': order.raw,
    }


def upsert_order(session, tenant_id: int, order: CanonicalOrder) -> None:
    """
    Insert or overwrite an order in one INSERT ... ON CONFLICT DO UPDATE.

    Last write wins: every derived column is replaced, first_seen_at is kept
    from the first insert and synced_at is bumped. Runs inside a savepoint so a
    failed write leaves the outer transaction usable. Caller commits.
    """
    if not order.id:
        raise BusinessLogicError("Cannot store an order without an id")

    insert = _dialect_insert(session)
    stmt = insert(WixOrder).values(**order_values(tenant_id, order))
    stmt = stmt.on_conflict_do_update(
        index_elements=[WixOrder.tenant_id, WixOrder.id],
        set_={
            **{column: stmt.excluded[column] for column in DERIVED_COLUMNS},
            'synced_at': func.now(),
        },
    )

    with session.begin_nested():
        session.execute(stmt)

    # Identity map may hold a stale copy from an earlier read
    cached = session.identity_map.get(session.identity_key(WixOrder, (tenant_id, order.id)))
    if cached is not None:
        session.expire(cached)

    logger.debug(f"[STORE] Upserted order {order.id} for tenant {tenant_id}")


def get_order(session, tenant_id: int, order_id: str) -> Optional[WixOrder]:
    return session.query(WixOrder).filter(
        WixOrder.tenant_id == tenant_id,
        WixOrder.id == str(order_id),
    ).first()


def list_orders_in_range(session, tenant_id: int, start: datetime, end: datetime) -> List[WixOrder]:
    """Orders created in [start, end), oldest first."""
    return session.query(WixOrder).filter(
        WixOrder.tenant_id == tenant_id,
        WixOrder.created_at >= start,
        WixOrder.created_at < end,
    ).order_by(WixOrder.created_at.asc(), WixOrder.id.asc()).all()


def count_orders(session, tenant_id: int) -> int:
    return session.query(func.count(WixOrder.id)).filter(WixOrder.tenant_id == tenant_id).scalar() or 0


def canonical_from_row(row: WixOrder) -> CanonicalOrder:
    """Re-derive the canonical order from the stored payload."""
    return normalize_order(row.raw or {'id': row.id}, row.source)
