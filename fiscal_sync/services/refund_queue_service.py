"""
Refund queue - refund events that arrived before their sale receipt.

A webhook may deliver the refund of an order whose sale receipt has not been
issued yet (the sale is still waiting for enrichment, or the events arrived
out of order). Those refunds are parked here and retried by the cron endpoint.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fiscal_sync.exceptions import BusinessLogicError, NotFoundError
from fiscal_sync.models import (
    AuditAction, PendingRefund, DEFAULT_REFUND_KEY,
    PENDING_STATUS_PENDING, PENDING_STATUS_PROCESSED, PENDING_STATUS_FAILED
)
from fiscal_sync.services.audit_service import log_action
from fiscal_sync.services.receipt_service import issue_refund_receipt

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


def queue_pending_refund(session, tenant_id: int, order_id: str, refund_amount: Optional[Decimal] = None,
                         refund_key: str = DEFAULT_REFUND_KEY, reason: Optional[str] = None,
                         event_payload: Optional[Dict[str, Any]] = None) -> PendingRefund:
    """
    Park a refund until the sale receipt exists. A second event for the same
    (order, refund_key) while the first is still pending returns the existing row.
    Commits the session.
    """
    refund_key = (refund_key or DEFAULT_REFUND_KEY).strip()[:64]
    existing = session.query(PendingRefund).filter(
        PendingRefund.tenant_id == tenant_id,
        PendingRefund.order_id == str(order_id),
        PendingRefund.refund_key == refund_key,
        PendingRefund.status == PENDING_STATUS_PENDING
    ).first()
    if existing is not None:
        logger.info(f"[REFUNDS] Refund '{refund_key}' for order {order_id} already queued (#{existing.id})")
        return existing

    try:
        pending = PendingRefund(
            tenant_id=tenant_id,
            order_id=str(order_id),
            refund_amount=refund_amount,
            refund_key=refund_key,
            reason=reason,
            event_payload=event_payload,
            status=PENDING_STATUS_PENDING,
            attempts=0,
        )
        session.add(pending)
        session.flush()

        log_action(
            session, tenant_id, AuditAction.REFUND_QUEUED,
            order_id=str(order_id),
            details={'amount': refund_amount, 'refund_key': refund_key, 'reason': reason}
        )
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info(f"[REFUNDS] Queued refund '{refund_key}' for order {order_id} (tenant {tenant_id})")
    return pending


def list_pending_refunds(session, tenant_id: Optional[int] = None) -> List[PendingRefund]:
    query = session.query(PendingRefund).filter(PendingRefund.status == PENDING_STATUS_PENDING)
    if tenant_id is not None:
        query = query.filter(PendingRefund.tenant_id == tenant_id)
    return query.order_by(PendingRefund.created_at.asc(), PendingRefund.id.asc()).all()


def process_pending_refunds(session, tenant_id: Optional[int] = None,
                            max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> Dict[str, int]:
    """
    Retry queued refunds. A refund whose sale is still missing stays pending
    until max_attempts is reached, then it is marked failed. Refunds that
    cannot be issued at all (invalid amount) fail immediately.

    Returns:
        Counters: processed, still_pending, failed
    """
    stats = {'processed': 0, 'still_pending': 0, 'failed': 0}

    for pending in list_pending_refunds(session, tenant_id):
        pending_id = pending.id
        order_id = pending.order_id
        pending_tenant = pending.tenant_id

        try:
            result = issue_refund_receipt(
                session, pending_tenant, order_id,
                refund_amount=pending.refund_amount,
                refund_key=pending.refund_key,
                reason=pending.reason
            )
        except NotFoundError as e:
            session.rollback()
            pending = session.get(PendingRefund, pending_id)
            pending.attempts = (pending.attempts or 0) + 1
            pending.last_error = e.message
            if pending.attempts >= max_attempts:
                pending.status = PENDING_STATUS_FAILED
                stats['failed'] += 1
                logger.warning(f"[REFUNDS] Giving up on refund #{pending_id} for order {order_id}: {e.message}")
            else:
                stats['still_pending'] += 1
            session.commit()
            continue
        except BusinessLogicError as e:
            session.rollback()
            pending = session.get(PendingRefund, pending_id)
            pending.attempts = (pending.attempts or 0) + 1
            pending.last_error = e.message
            pending.status = PENDING_STATUS_FAILED
            session.commit()
            stats['failed'] += 1
            logger.warning(f"[REFUNDS] Refund #{pending_id} for order {order_id} rejected: {e.message}")
            continue

        pending = session.get(PendingRefund, pending_id)
        pending.attempts = (pending.attempts or 0) + 1
        pending.status = PENDING_STATUS_PROCESSED
        pending.processed_at = datetime.now(timezone.utc)
        pending.last_error = None
        session.commit()
        stats['processed'] += 1
        logger.info(
            f"[REFUNDS] Pending refund #{pending_id} for order {order_id} -> receipt #{result.receipt_id}"
            f"{'' if result.created else ' (existing)'}"
        )

    return stats
