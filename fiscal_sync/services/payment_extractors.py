"""
Pure extractors for payment and delivery data scattered across Wix payloads.

A payment-gateway reference (Stripe-style pi_/ch_/pay_ id) found anywhere in
a payload always wins over Wix-internal payment ids: the gateway reference is
what the NRA audit file reconciles against.
"""
import re
from typing import Any, Dict, Iterable, List, Optional

from fiscal_sync.services.order_normalizer import (
    dig, first_non_null, first_path, unwrap_envelope,
    resolve_customer_email, resolve_customer_name, UNKNOWN_CUSTOMER
)

PROVIDER_ID_PATTERN = re.compile(r'^(pi|ch|pay)_[A-Za-z0-9]+$')

# Recursion guard for find_provider_id
MAX_SEARCH_DEPTH = 12

PREFERRED_PAYMENT_STATUSES = ('APPROVED', 'COMPLETED', 'REFUNDED')

TRANSACTION_REF_PATHS = (
    ('paymentInfo', 'transactionId'),
    ('payment', 'providerTransactionId'),
    ('payment', 'gatewayTransactionId'),
    ('payment', 'transactionId'),
    ('orderTransactions', 'payments', 0, 'regularPaymentDetails', 'providerTransactionId'),
    ('orderTransactions', 'payments', 0, 'regularPaymentDetails', 'gatewayTransactionId'),
    ('transactionId',),
)

PAYMENT_TRANSACTION_REF_PATHS = (
    ('regularPaymentDetails', 'providerTransactionId'),
    ('regularPaymentDetails', 'gatewayTransactionId'),
    ('providerTransactionId',),
    ('gatewayTransactionId',),
    ('transactionId',),
    ('chargeId',),
)

PAYMENT_ID_PATHS = (
    ('metadata', 'paymentId'),
    ('paymentId',),
    ('payment', 'id'),
    ('payment', '_id'),
    ('paymentInfo', 'paymentId'),
    ('orderTransactions', 'payments', 0, 'id'),
    ('payments', 0, 'id'),
)

PAYMENT_PAID_AT_PATHS = (
    ('paidDate',),
    ('paidAt',),
    ('regularPaymentDetails', 'paidDate'),
    ('completedDate',),
    ('createdDate',),
    ('createdAt',),
)

PAYMENT_STATUS_PATHS = (
    ('regularPaymentDetails', 'status'),
    ('status',),
    ('paymentStatus',),
)

PAYMENT_ORDER_ID_PATHS = (
    ('orderId',),
    ('order_id',),
    ('order', 'id'),
    ('ecomOrderId',),
    ('referenceId',),
)

PAYMENT_ORDER_NUMBER_PATHS = (
    ('orderNumber',),
    ('order', 'number'),
)

PAYMENT_METHOD_LABEL_PATHS = (
    ('regularPaymentDetails', 'paymentMethod'),
    ('method', 'displayName'),
    ('method', 'name'),
    ('method', 'type'),
    ('paymentMethodDetails', 'displayName'),
    ('paymentMethodDetails', 'name'),
    ('paymentMethodDetails', 'type'),
    ('paymentMethod', 'displayName'),
    ('paymentMethod', 'name'),
    ('paymentMethod', 'type'),
    ('paymentMethod',),
    ('paymentMethodType',),
    ('method',),
    ('type',),
    ('provider',),
    ('paymentType',),
)

PAYMENT_CARD_PATHS = (
    ('regularPaymentDetails', 'creditCardDetails'),
    ('card',),
    ('paymentMethodDetails', 'card'),
    ('paymentMethod', 'card'),
)

DELIVERY_METHOD_PATHS = (
    ('metadata', 'deliveryMethod'),
    ('shippingInfo', 'title'),
    ('shippingInfo', 'logistics', 'deliveryTime'),
    ('shippingInfo', 'shipmentDetails', 'deliveryMethod'),
    ('shippingInfo', 'deliveryOption'),
    ('shippingInfo', 'code'),
    ('deliveryMethod',),
    ('shippingMethod', 'name'),
    ('shippingMethod',),
)

SHIPPING_ADDRESS_PATHS = (
    ('shippingInfo', 'logistics', 'shippingDestination', 'address'),
    ('shippingInfo', 'shipmentDetails', 'address'),
    ('recipientInfo', 'address'),
    ('shippingAddress',),
)

ORDER_PAYMENT_METHOD_PATHS = (
    ('metadata', 'paymentSummary', 'methodText'),
    ('metadata', 'paymentSummary', 'methodLabel'),
    ('paymentMethod', 'name'),
    ('paymentMethod',),
    ('payment', 'method'),
    ('orderTransactions', 'payments', 0, 'regularPaymentDetails', 'paymentMethod'),
)

COD_METHOD_MARKERS = re.compile(r'\bcod\b|cash on delivery|наложен|offline', re.IGNORECASE)
COD_COURIER_MARKERS = re.compile(r'econt|speedy|еконт|спиди', re.IGNORECASE)


def _text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = str(value).strip()
    return text or None


def is_provider_id(value: Any) -> bool:
    return isinstance(value, str) and bool(PROVIDER_ID_PATTERN.match(value.strip()))


def find_provider_id(obj: Any, _depth: int = 0) -> Optional[str]:
    """Depth-first search for a pi_/ch_/pay_ gateway id anywhere in a payload."""
    if _depth > MAX_SEARCH_DEPTH:
        return None
    if isinstance(obj, str):
        candidate = obj.strip()
        return candidate if is_provider_id(candidate) else None
    if isinstance(obj, dict):
        children: Iterable[Any] = obj.values()
    elif isinstance(obj, list):
        children = obj
    else:
        return None
    for child in children:
        found = find_provider_id(child, _depth + 1)
        if found:
            return found
    return None


def extract_transaction_ref(order_raw: Any) -> Optional[str]:
    provider_id = find_provider_id(order_raw)
    if provider_id:
        return provider_id
    return _text(first_non_null(
        dig(order_raw, ('metadata', 'transactionRef')),
        first_path(order_raw, TRANSACTION_REF_PATHS),
    ))


def extract_payment_id(order_raw: Any) -> Optional[str]:
    return _text(first_path(order_raw, PAYMENT_ID_PATHS))


def extract_transaction_ref_from_payment(payment: Any) -> Optional[str]:
    if not payment:
        return None
    provider_id = find_provider_id(payment)
    if provider_id:
        return provider_id
    return _text(first_path(payment, PAYMENT_TRANSACTION_REF_PATHS))


def extract_paid_at_from_payment(payment: Any) -> Optional[str]:
    """Paid timestamp as the upstream wrote it (envelopes unwrapped)."""
    if not payment:
        return None
    return _text(unwrap_envelope(first_path(payment, PAYMENT_PAID_AT_PATHS)))


def extract_payment_summary_from_payment(payment: Any) -> Optional[Dict[str, Optional[str]]]:
    """Payment method label plus card brand / last four digits."""
    if not payment or not isinstance(payment, dict):
        return None

    if dig(payment, ('regularPaymentDetails', 'offlinePayment')):
        method_label = 'Offline'
    else:
        method_label = first_path(payment, PAYMENT_METHOD_LABEL_PATHS)
        if isinstance(method_label, dict):
            method_label = first_non_null(method_label.get('displayName'), method_label.get('name'),
                                          method_label.get('type'))
    method_label = _text(method_label)

    card = first_path(payment, PAYMENT_CARD_PATHS)
    if not isinstance(card, dict):
        card = {}
    card_brand = _text(first_non_null(
        card.get('brand'), card.get('type'), card.get('brandName'),
        payment.get('cardBrand'), payment.get('cardProvider'), payment.get('cardType'),
    ))
    card_last4 = _text(first_non_null(
        card.get('last4'), card.get('lastFourDigits'),
        payment.get('cardLast4'), payment.get('last4'),
    ))

    if not (method_label or card_brand or card_last4):
        return None
    return {
        'methodText': method_label.lower() if method_label else None,
        'methodLabel': method_label,
        'cardBrand': card_brand,
        'cardLast4': card_last4,
    }


def extract_delivery_method(order_raw: Any) -> Optional[str]:
    value = first_path(order_raw, DELIVERY_METHOD_PATHS)
    if isinstance(value, dict):
        value = first_non_null(value.get('title'), value.get('name'), value.get('code'))
    return _text(value)


def has_shipping_address(order_raw: Any) -> bool:
    for path in SHIPPING_ADDRESS_PATHS:
        address = dig(order_raw, path)
        if isinstance(address, dict) and any(v for v in address.values()):
            return True
        if isinstance(address, str) and address.strip():
            return True
    return False


def has_customer_identity(order_raw: Any) -> bool:
    if resolve_customer_email(order_raw):
        return True
    return resolve_customer_name(order_raw) != UNKNOWN_CUSTOMER


def needs_enrichment(order_raw: Any) -> bool:
    """True when any of transaction ref, delivery method, shipping address or customer identity is missing."""
    return (
        not extract_transaction_ref(order_raw)
        or not extract_delivery_method(order_raw)
        or not has_shipping_address(order_raw)
        or not has_customer_identity(order_raw)
    )


def payment_status(payment: Any) -> Optional[str]:
    status = _text(first_path(payment, PAYMENT_STATUS_PATHS))
    return status.upper() if status else None


def pick_preferred_payment(payments: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Prefer an APPROVED/COMPLETED/REFUNDED payment, else the first one."""
    if not payments:
        return None
    for payment in payments:
        if payment_status(payment) in PREFERRED_PAYMENT_STATUSES:
            return payment
    return payments[0]


def payment_order_keys(payment: Any) -> List[str]:
    """Order ids and numbers a payment record points at."""
    keys = []
    for path in PAYMENT_ORDER_ID_PATHS + PAYMENT_ORDER_NUMBER_PATHS:
        value = _text(dig(payment, path))
        if value and value not in keys:
            keys.append(value)
    return keys


def index_payments(payments: Optional[List[Dict[str, Any]]]) -> Dict[str, List[Dict[str, Any]]]:
    """Map order id/number -> payments, built once per sync run."""
    index: Dict[str, List[Dict[str, Any]]] = {}
    for payment in payments or []:
        if not isinstance(payment, dict):
            continue
        for key in payment_order_keys(payment):
            index.setdefault(key, []).append(payment)
    return index


def lookup_indexed_payment(index: Dict[str, List[Dict[str, Any]]], order_id: Optional[str],
                           order_number: Optional[str] = None) -> Optional[Dict[str, Any]]:
    matches = []
    for key in (order_id, order_number):
        if key is None:
            continue
        for payment in index.get(str(key), []):
            if payment not in matches:
                matches.append(payment)
    return pick_preferred_payment(matches)


def is_cod_order(order_raw: Any) -> bool:
    """
    Heuristic cash-on-delivery detection.

    Positive when the payment method text mentions cod/offline/наложен, or an
    offline payment flag is set, or the delivery method names a Bulgarian
    courier (Econt, Speedy) while enrichment found no payment records at all.
    Both false positives (prepaid courier orders without visible payments)
    and false negatives (COD under an unrecognized label) are possible.
    """
    if not isinstance(order_raw, dict):
        return False

    if dig(order_raw, ('orderTransactions', 'payments', 0, 'regularPaymentDetails', 'offlinePayment')):
        return True

    for path in ORDER_PAYMENT_METHOD_PATHS:
        method_text = _text(dig(order_raw, path))
        if method_text and COD_METHOD_MARKERS.search(method_text):
            return True

    records_found = dig(order_raw, ('metadata', 'paymentRecordsFound'))
    if records_found == 0:
        delivery = extract_delivery_method(order_raw)
        if delivery and COD_COURIER_MARKERS.search(delivery):
            return True

    return False
