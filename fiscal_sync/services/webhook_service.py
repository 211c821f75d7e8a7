"""
Wix order webhooks.

Wix signs each delivery as an RS256 JWT whose `data` claim is a JSON string
holding {data, instanceId, eventType}; the inner `data` is itself JSON with
the event envelope (id, entityId, createdEvent / updatedEvent / actionEvent).
Order events go through the same pipeline as the backfill, tagged 'webhook'.
"""
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import jwt
from sqlalchemy.exc import IntegrityError

from fiscal_sync.exceptions import NotFoundError, TenantNotFoundError, UnauthorizedError, BusinessLogicError
from fiscal_sync.models import (
    Tenant, WebhookLog, DEFAULT_REFUND_KEY,
    WEBHOOK_STATUS_RECEIVED, WEBHOOK_STATUS_PROCESSED, WEBHOOK_STATUS_ERROR
)
from fiscal_sync.services.order_normalizer import (
    ORDER_ID_PATHS, PROVENANCE_WEBHOOK, first_non_null, first_path, read_money
)
from fiscal_sync.services.receipt_service import get_sale_receipt, issue_refund_receipt
from fiscal_sync.services.refund_queue_service import queue_pending_refund
from fiscal_sync.services.sync_service import process_order_payload

logger = logging.getLogger(__name__)

JWT_ALGORITHMS = ['RS256']
PAYLOAD_PREVIEW_CHARS = 1000
REFUND_KEY_MAX = 64

# Envelope shapes that carry the order entity
ENTITY_PATHS = (
    ('createdEvent', 'entity'),
    ('createdEvent', 'entityAsJson'),
    ('updatedEvent', 'currentEntity'),
    ('updatedEvent', 'currentEntityAsJson'),
    ('actionEvent', 'body', 'order'),
    ('actionEvent', 'body'),
    ('actionEvent', 'bodyAsJson'),
    ('order',),
)

REFUND_PATHS = (
    ('actionEvent', 'body', 'refund'),
    ('refund',),
)


@dataclass
class WixEvent:
    event_id: str
    event_type: Optional[str]
    instance_id: Optional[str]
    site_id: Optional[str]
    order: Optional[Dict[str, Any]]
    refund: Optional[Dict[str, Any]] = None
    envelope: Dict[str, Any] = field(default_factory=dict)

    @property
    def order_id(self) -> Optional[str]:
        if self.order:
            value = first_path(self.order, ORDER_ID_PATHS)
            if value:
                return str(value)
        entity_id = self.envelope.get('entityId')
        return str(entity_id) if entity_id else None

    @property
    def is_refund(self) -> bool:
        return self.refund is not None or 'refund' in (self.event_type or '').lower()


def _maybe_json(value: Any) -> Any:
    if isinstance(value, str):
        text = value.strip()
        if text.startswith('{') or text.startswith('['):
            try:
                return json.loads(text)
            except ValueError:
                return value
    return value


def _dig_json(obj: Any, path) -> Any:
    current = obj
    for key in path:
        current = _maybe_json(current)
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return _maybe_json(current)


def decode_webhook_body(body: str, public_key: Optional[str], verify: bool = True) -> Dict[str, Any]:
    """
    Decode the delivered body into claims.

    With verify=True the body must be a JWT signed by the app key. Without
    verification (debug/testing only) a JWT is decoded unchecked and a plain
    JSON body is accepted as-is.

    Raises:
        UnauthorizedError: signature missing or invalid
        BusinessLogicError: body is neither a JWT nor JSON
    """
    body = (body or '').strip()
    if not body:
        raise BusinessLogicError("Empty webhook body")

    if verify:
        if not public_key:
            raise UnauthorizedError("Webhook public key is not configured")
        try:
            return jwt.decode(body, public_key, algorithms=JWT_ALGORITHMS)
        except jwt.PyJWTError as e:
            logger.warning(f"[WEBHOOK] Invalid signature: {e}")
            raise UnauthorizedError("Invalid webhook signature")

    if body.count('.') == 2 and not body.startswith('{'):
        try:
            return jwt.decode(body, options={'verify_signature': False}, algorithms=JWT_ALGORITHMS)
        except jwt.PyJWTError as e:
            raise BusinessLogicError(f"Malformed webhook token: {e}")

    try:
        claims = json.loads(body)
    except ValueError:
        raise BusinessLogicError("Webhook body is neither a JWT nor JSON")
    if not isinstance(claims, dict):
        raise BusinessLogicError("Webhook body must be an object")
    return claims


def parse_event(claims: Dict[str, Any], raw_body: str = '') -> WixEvent:
    """Unwrap the JWT claims into a WixEvent. Tolerates envelopes already decoded to objects."""
    outer = _maybe_json(claims.get('data', claims))
    if not isinstance(outer, dict):
        outer = {}

    envelope = _maybe_json(outer.get('data', outer))
    if not isinstance(envelope, dict):
        envelope = {}

    order = None
    for path in ENTITY_PATHS:
        candidate = _dig_json(envelope, path)
        if isinstance(candidate, dict) and candidate:
            order = candidate
            break
    if order is None and first_path(envelope, ORDER_ID_PATHS) and 'createdEvent' not in envelope:
        order = envelope

    refund = None
    for path in REFUND_PATHS:
        candidate = _dig_json(envelope, path)
        if isinstance(candidate, dict):
            refund = candidate
            break

    event_id = first_non_null(envelope.get('id'), envelope.get('eventId'), outer.get('eventId'))
    if not event_id:
        event_id = 'sha256:' + hashlib.sha256((raw_body or json.dumps(claims, sort_keys=True)).encode('utf-8')).hexdigest()

    instance_id = first_non_null(outer.get('instanceId'), (outer.get('metadata') or {}).get('instanceId'),
                                 (order or {}).get('instanceId'))
    site_id = first_non_null(outer.get('siteId'), (outer.get('metadata') or {}).get('siteId'),
                             (order or {}).get('siteId'))

    return WixEvent(
        event_id=str(event_id),
        event_type=first_non_null(outer.get('eventType'), envelope.get('entityFqdn')),
        instance_id=str(instance_id) if instance_id else None,
        site_id=str(site_id) if site_id else None,
        order=order,
        refund=refund,
        envelope=envelope,
    )


def resolve_tenant(session, event: WixEvent) -> Tenant:
    """Find the connected tenant for the event's app instance or site."""
    tenant = None
    if event.instance_id:
        tenant = session.query(Tenant).filter_by(instance_id=event.instance_id, active=True).first()
    if tenant is None and event.site_id:
        tenant = session.query(Tenant).filter_by(site_id=event.site_id, active=True).first()
    if tenant is None:
        raise TenantNotFoundError(event.site_id or event.instance_id)
    return tenant


def _register_event(session, event: WixEvent, raw_body: str) -> Optional[WebhookLog]:
    """
    Insert the webhook log row; None when the event id was already handled.
    A redelivery of an event that failed before is processed again.
    """
    try:
        with session.begin_nested():
            entry = WebhookLog(
                event_id=event.event_id,
                event_type=event.event_type,
                order_id=event.order_id,
                status=WEBHOOK_STATUS_RECEIVED,
                payload_preview=(raw_body or '')[:PAYLOAD_PREVIEW_CHARS],
            )
            session.add(entry)
            session.flush()
    except IntegrityError:
        entry = session.query(WebhookLog).filter_by(event_id=event.event_id).first()
        if entry is None or entry.status != WEBHOOK_STATUS_ERROR:
            return None
        entry.status = WEBHOOK_STATUS_RECEIVED
        entry.error_message = None
    session.commit()
    return entry


def _finish(session, log_id: int, status: str, tenant_id: Optional[int] = None, error: Optional[str] = None) -> None:
    entry = session.get(WebhookLog, log_id)
    if entry is None:
        return
    entry.status = status
    if tenant_id is not None:
        entry.tenant_id = tenant_id
    entry.error_message = error[:2000] if error else None
    session.commit()


def handle_refund_event(session, tenant, event: WixEvent) -> Dict[str, Any]:
    """Issue the refund receipt now, or queue it when the sale receipt is not there yet."""
    refund = event.refund or {}
    order_id = event.order_id
    if not order_id:
        raise BusinessLogicError("Refund event without an order id")

    amount = first_non_null(
        read_money(refund.get('amount')).amount,
        read_money(refund.get('refundAmount')).amount,
        read_money(refund.get('total')).amount,
    )
    refund_key = first_non_null(refund.get('id'), refund.get('refundId'))
    if refund_key is None:
        # 'full' is the remainder refund; an explicit amount gets its own key
        refund_key = DEFAULT_REFUND_KEY if amount is None else f'event:{event.event_id}'
    refund_key = str(refund_key)[:REFUND_KEY_MAX]
    reason = first_non_null(refund.get('reason'), event.event_type)

    if get_sale_receipt(session, tenant.id, order_id) is None:
        pending = queue_pending_refund(
            session, tenant.id, order_id, refund_amount=amount, refund_key=refund_key,
            reason=reason, event_payload=event.envelope
        )
        return {'status': 'queued', 'order_id': order_id, 'pending_refund_id': pending.id}

    result = issue_refund_receipt(
        session, tenant.id, order_id, refund_amount=amount, refund_key=refund_key, reason=reason
    )
    return {'status': 'processed', 'order_id': order_id, 'receipt_id': result.receipt_id, 'created': result.created}


def handle_webhook(session, client, raw_body: str, public_key: Optional[str] = None,
                   verify: bool = True) -> Dict[str, Any]:
    """
    Verify, de-duplicate and process one webhook delivery.

    Returns a JSON-ready dict. Duplicated event ids are acknowledged without
    reprocessing. Events for unknown sites are acknowledged and ignored.
    """
    claims = decode_webhook_body(raw_body, public_key, verify)
    event = parse_event(claims, raw_body)
    logger.info(f"[WEBHOOK] Event {event.event_id} type={event.event_type} order={event.order_id}")

    entry = _register_event(session, event, raw_body)
    if entry is None:
        logger.info(f"[WEBHOOK] Duplicate event {event.event_id}; skipping")
        return {'status': 'duplicate', 'event_id': event.event_id}
    log_id = entry.id

    try:
        tenant = resolve_tenant(session, event)
    except TenantNotFoundError as e:
        logger.warning(f"[WEBHOOK] {e.message}; event {event.event_id} ignored")
        _finish(session, log_id, WEBHOOK_STATUS_ERROR, error=e.message)
        return {'status': 'ignored', 'event_id': event.event_id, 'reason': 'unknown_tenant'}

    tenant_id = tenant.id
    try:
        if event.is_refund:
            response = handle_refund_event(session, tenant, event)
        elif event.order:
            outcome = process_order_payload(
                session, client, tenant, None, event.order, provenance=PROVENANCE_WEBHOOK
            )
            response = {'status': 'processed', **outcome.to_dict()}
        else:
            response = {'status': 'ignored', 'reason': 'no_order'}
    except (BusinessLogicError, NotFoundError) as e:
        session.rollback()
        _finish(session, log_id, WEBHOOK_STATUS_ERROR, tenant_id, e.message)
        raise
    except Exception as e:
        session.rollback()
        logger.exception(f"[WEBHOOK] Event {event.event_id} failed: {e}")
        _finish(session, log_id, WEBHOOK_STATUS_ERROR, tenant_id, str(e))
        raise

    _finish(session, log_id, WEBHOOK_STATUS_PROCESSED, tenant_id)
    response['event_id'] = event.event_id
    return response
