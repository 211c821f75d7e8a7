"""
Order normalizer.

Maps the many historical shapes of a Wix order payload onto one canonical
record. Every field is resolved through an ordered tuple of candidate paths;
the first non-null candidate wins. The tuples are module constants so the
fallback order is explicit and covered by tests.

normalize_order() never raises: malformed input yields null fields.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, date, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

UNKNOWN_CUSTOMER = "unknown"

PROVENANCE_WEBHOOK = 'webhook'
PROVENANCE_BACKFILL = 'backfill'

Path = Tuple[Any, ...]

# Identity
ORDER_ID_PATHS: Tuple[Path, ...] = (
    ('id',),
    ('_id',),
    ('orderId',),
    ('order', 'id'),
)

ORDER_NUMBER_PATHS: Tuple[Path, ...] = (
    ('number',),
    ('orderNumber', 'number'),
    ('orderNumber', 'displayNumber'),
    ('displayId',),
    ('orderNumber',),
    ('sequenceNumber',),
)

SITE_ID_PATHS: Tuple[Path, ...] = (
    ('siteId',),
    ('site_id',),
    ('metadata', 'siteId'),
)

# Lifecycle
STATUS_PATHS: Tuple[Path, ...] = (
    ('status',),
    ('fulfillmentStatus',),
    ('lifecycleStatus',),
)

PAYMENT_STATUS_PATHS: Tuple[Path, ...] = (
    ('paymentStatus',),
    ('financialStatus',),
    ('payment', 'status'),
)

# Dates
CREATED_AT_PATHS: Tuple[Path, ...] = (
    ('createdDate',),
    ('createdAt',),
    ('creationDate',),
    ('createdOn',),
    ('dateCreated',),
)

UPDATED_AT_PATHS: Tuple[Path, ...] = (
    ('updatedDate',),
    ('updatedAt',),
    ('lastUpdated',),
)

PAID_AT_PATHS: Tuple[Path, ...] = (
    ('paidDate',),
    ('paymentDate',),
    ('paidAt',),
    ('metadata', 'paidAt'),
)

# Money
TOTAL_PATHS: Tuple[Path, ...] = (
    ('priceSummary', 'total'),
    ('priceSummary', 'totalAmount'),
    ('totals', 'total'),
    ('totals', 'totalAmount'),
    ('totals', 'grandTotal'),
    ('price', 'total'),
    ('price', 'totalPrice'),
    ('payNow', 'total'),
    ('payNow', 'amount'),
    ('total',),
    ('totalAmount',),
)

SUBTOTAL_PATHS: Tuple[Path, ...] = (
    ('priceSummary', 'subtotal'),
    ('priceSummary', 'subtotalAmount'),
    ('totals', 'subtotal'),
    ('totals', 'subtotalAmount'),
    ('subtotal',),
)

TAX_PATHS: Tuple[Path, ...] = (
    ('priceSummary', 'tax'),
    ('priceSummary', 'taxAmount'),
    ('totals', 'tax'),
    ('totals', 'taxAmount'),
    ('taxTotal',),
)

SHIPPING_PATHS: Tuple[Path, ...] = (
    ('priceSummary', 'shipping'),
    ('priceSummary', 'shippingAmount'),
    ('totals', 'shipping'),
    ('totals', 'shippingAmount'),
    ('shippingTotal',),
)

DISCOUNT_PATHS: Tuple[Path, ...] = (
    ('priceSummary', 'discount'),
    ('priceSummary', 'discountAmount'),
    ('totals', 'discount'),
    ('totals', 'discountAmount'),
    ('discountTotal',),
)

CURRENCY_PATHS: Tuple[Path, ...] = (
    ('priceSummary', 'currency'),
    ('totals', 'currency'),
    ('currency',),
    ('buyerCurrency',),
    ('currencyCode',),
)

# Customer
EMAIL_PATHS: Tuple[Path, ...] = (
    ('buyerInfo', 'email'),
    ('buyer', 'email'),
    ('buyerEmail',),
    ('billingInfo', 'contactDetails', 'email'),
    ('recipientInfo', 'contactDetails', 'email'),
    ('contactDetails', 'email'),
    ('customerEmail',),
)

CUSTOMER_CONTAINERS: Tuple[Path, ...] = (
    ('buyerInfo',),
    ('buyer',),
    ('billingInfo', 'contactDetails'),
    ('billingInfo', 'address'),
    ('recipientInfo', 'contactDetails'),
    ('shippingInfo', 'logistics', 'shippingDestination', 'contactDetails'),
    ('shippingInfo', 'shipmentDetails', 'address'),
    ('contactDetails',),
)

NAME_KEY_PAIRS: Tuple[Tuple[str, str], ...] = (
    ('firstName', 'lastName'),
    ('givenName', 'familyName'),
)

# Keys looked up inside a money object, one nested level deep
MONEY_AMOUNT_KEYS = ('amount', 'value', 'money', 'total', 'totalAmount')
MONEY_NESTED_AMOUNT_KEYS = ('value', 'amount', 'total')
MONEY_CURRENCY_KEYS = ('currency', 'currencyCode')

DATE_ENVELOPE_KEYS = ('value', 'date', 'timestamp', 'formattedDate')

ARCHIVED_FLAG_KEYS = ('archived', 'isArchived', 'archivedAt', 'archivedDate', 'archiveDate')

# Optional currency text around one signed number; digits anywhere else (exponents) reject the value
_AMOUNT_PATTERN = re.compile(r'^(?P<prefix>[^\d-]*?)(?P<sign>-)?(?P<number>\d[\d.,]*|[.,]\d+)(?P<suffix>[^\d-]*)$')
_GROUPING_CHARS = re.compile(r"[\s']")
_THOUSANDS_GROUP = re.compile(r'^\d{1,3}$')


# Epoch values above this are milliseconds
_EPOCH_MS_THRESHOLD = 10 ** 11


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------

def first_non_null(*candidates):
    """Return the first candidate that is not None (empty strings count as missing)."""
    for candidate in candidates:
        if candidate is None:
            continue
        if isinstance(candidate, str) and not candidate.strip():
            continue
        return candidate
    return None


def dig(obj: Any, path: Sequence[Any]) -> Any:
    """Walk a key/index path through nested dicts and lists; None when any hop is missing."""
    current = obj
    for key in path:
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, list) and isinstance(key, int):
            if -len(current) <= key < len(current):
                current = current[key]
            else:
                return None
        else:
            return None
        if current is None:
            return None
    return current


def first_path(obj: Any, paths: Iterable[Path]) -> Any:
    """Resolve the first non-null value among candidate paths, in order."""
    return first_non_null(*(dig(obj, path) for path in paths))


def unwrap_envelope(value: Any) -> Any:
    """Unwrap {value|date|timestamp|formattedDate} envelopes around a scalar."""
    if isinstance(value, dict):
        return first_non_null(*(value.get(key) for key in DATE_ENVELOPE_KEYS))
    return value


# ---------------------------------------------------------------------------
# Scalar parsing
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Money:
    amount: Optional[Decimal] = None
    currency: Optional[str] = None


def parse_amount(value: Any) -> Optional[Decimal]:
    """Parse a loosely formatted amount ("1 234,50 лв.", 12.5, "12.50") into a Decimal."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, (int, float)):
        try:
            parsed = Decimal(str(value))
        except InvalidOperation:
            return None
        return parsed if parsed.is_finite() else None
    if isinstance(value, str):
        match = _AMOUNT_PATTERN.match(_GROUPING_CHARS.sub('', value))
        if not match:
            return None
        number = _normalize_separators(match.group('number').rstrip('.,'))
        if number is None:
            return None
        try:
            parsed = Decimal((match.group('sign') or '') + number)
        except InvalidOperation:
            return None
        return parsed if parsed.is_finite() else None
    return None


def _normalize_separators(number: str) -> Optional[str]:
    """
    Rewrite "1.234,50", "1,234.50" or "12,50" with a dot as the only decimal point.

    A lone separator is the decimal point. A separator that repeats, or comes
    before the other kind, must group digits in threes. Anything else is
    ambiguous and rejected.
    """
    if not number:
        return None
    separators = [ch for ch in number if ch in '.,']
    if not separators:
        return number

    decimal_sep = separators[-1]
    if separators.count(decimal_sep) > 1:
        # "1.234.567": grouping only, no decimals
        decimal_sep = None
    grouping = set(separators) - {decimal_sep}
    if len(grouping) > 1:
        return None

    if decimal_sep:
        integer_part, _, fraction = number.rpartition(decimal_sep)
    else:
        integer_part, fraction = number, ''

    if grouping:
        groups = integer_part.split(grouping.pop())
        if not _THOUSANDS_GROUP.match(groups[0]) or any(len(g) != 3 or not g.isdigit() for g in groups[1:]):
            return None
        integer_part = ''.join(groups)

    return f"{integer_part or '0'}.{fraction}" if fraction else (integer_part or None)


def read_money(value: Any) -> Money:
    """Extract amount and currency from a scalar or a money object."""
    if value is None:
        return Money()
    if isinstance(value, (int, float, str, Decimal)) and not isinstance(value, bool):
        return Money(parse_amount(value), None)
    if not isinstance(value, dict):
        return Money()

    amount_value = first_non_null(*(value.get(key) for key in MONEY_AMOUNT_KEYS))
    currency = first_non_null(*(value.get(key) for key in MONEY_CURRENCY_KEYS))

    if isinstance(amount_value, dict):
        nested_amount = first_non_null(*(amount_value.get(key) for key in MONEY_NESTED_AMOUNT_KEYS))
        nested_currency = first_non_null(
            *(amount_value.get(key) for key in MONEY_CURRENCY_KEYS), currency
        )
        if isinstance(nested_amount, dict):
            return Money(None, _as_text(nested_currency))
        return Money(parse_amount(nested_amount), _as_text(nested_currency))

    return Money(parse_amount(amount_value), _as_text(currency))


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO strings, dates and epoch seconds/milliseconds into aware UTC datetimes."""
    value = unwrap_envelope(value)
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    if isinstance(value, (int, float)):
        return _from_epoch(value)

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if re.fullmatch(r'-?\d+(\.\d+)?', text):
            return _from_epoch(float(text))
        if text.endswith('Z') or text.endswith('z'):
            text = text[:-1] + '+00:00'
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            pass
        try:
            parsed_date = date.fromisoformat(text[:10])
        except ValueError:
            logger.debug(f"[NORMALIZE] Unparseable date value: {value!r}")
            return None
        return datetime(parsed_date.year, parsed_date.month, parsed_date.day, tzinfo=timezone.utc)

    return None


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _from_epoch(value: float) -> Optional[datetime]:
    if abs(value) >= _EPOCH_MS_THRESHOLD:
        value = value / 1000.0
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _as_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


# ---------------------------------------------------------------------------
# Field resolvers
# ---------------------------------------------------------------------------

def resolve_customer_name(raw: Any) -> str:
    """First/last (or given/family) name from the customer containers, else UNKNOWN_CUSTOMER."""
    for container_path in CUSTOMER_CONTAINERS:
        container = dig(raw, container_path)
        if not isinstance(container, dict):
            continue
        for first_key, last_key in NAME_KEY_PAIRS:
            parts = [_as_text(container.get(first_key)), _as_text(container.get(last_key))]
            joined = ' '.join(part for part in parts if part)
            if joined:
                return joined
        plain_name = container.get('name')
        if isinstance(plain_name, str) and plain_name.strip():
            return plain_name.strip()
    return UNKNOWN_CUSTOMER


def resolve_customer_email(raw: Any) -> Optional[str]:
    return _as_text(first_path(raw, EMAIL_PATHS))


def resolve_money(raw: Any, paths: Iterable[Path]) -> Money:
    """Read the first candidate path that yields an amount."""
    for path in paths:
        candidate = dig(raw, path)
        if candidate is None:
            continue
        money = read_money(candidate)
        if money.amount is not None:
            return money
    return Money()


def resolve_order_number(raw: Any) -> Optional[str]:
    for path in ORDER_NUMBER_PATHS:
        candidate = dig(raw, path)
        if candidate is None or isinstance(candidate, (dict, list)):
            continue
        text = _as_text(candidate)
        if text:
            return text
    return None


def is_archived_order(raw: Any) -> bool:
    if not isinstance(raw, dict):
        return False
    if any(raw.get(key) for key in ARCHIVED_FLAG_KEYS):
        return True
    return 'archived' in str(raw.get('status') or '').lower()


# ---------------------------------------------------------------------------
# Canonical order
# ---------------------------------------------------------------------------

@dataclass
class CanonicalOrder:
    """Normalized view of an upstream order."""
    id: Optional[str] = None
    site_id: Optional[str] = None
    number: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    currency: Optional[str] = None
    subtotal: Optional[Decimal] = None
    tax_total: Optional[Decimal] = None
    shipping_total: Optional[Decimal] = None
    discount_total: Optional[Decimal] = None
    total: Optional[Decimal] = None
    customer_name: str = UNKNOWN_CUSTOMER
    customer_email: Optional[str] = None
    source: str = PROVENANCE_BACKFILL
    is_archived: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_cancelled(self) -> bool:
        return 'cancel' in (self.status or '').lower()

    @property
    def is_paid(self) -> bool:
        return self.payment_status == 'PAID'

    @property
    def metadata(self) -> Dict[str, Any]:
        metadata = self.raw.get('metadata') if isinstance(self.raw, dict) else None
        return metadata if isinstance(metadata, dict) else {}

    def to_snapshot(self) -> Dict[str, Any]:
        """JSON-safe copy of the derived fields, frozen into a receipt payload."""
        def money(value):
            return str(value) if value is not None else None

        def moment(value):
            return value.isoformat() if value is not None else None

        metadata = self.metadata
        return {
            'id': self.id,
            'siteId': self.site_id,
            'number': self.number,
            'status': self.status,
            'paymentStatus': self.payment_status,
            'createdAt': moment(self.created_at),
            'updatedAt': moment(self.updated_at),
            'paidAt': moment(self.paid_at),
            'currency': self.currency,
            'subtotal': money(self.subtotal),
            'taxTotal': money(self.tax_total),
            'shippingTotal': money(self.shipping_total),
            'discountTotal': money(self.discount_total),
            'total': money(self.total),
            'customerName': self.customer_name,
            'customerEmail': self.customer_email,
            'source': self.source,
            'transactionRef': metadata.get('transactionRef'),
            'paymentSummary': metadata.get('paymentSummary'),
            'deliveryMethod': metadata.get('deliveryMethod'),
        }


def normalize_order(raw: Any, provenance: str = PROVENANCE_BACKFILL) -> CanonicalOrder:
    """Build a CanonicalOrder from any payload. Never raises."""
    if not isinstance(raw, dict):
        return CanonicalOrder(source=provenance, raw={})

    try:
        return _normalize(raw, provenance)
    except Exception as e:
        # Normalization is total; any shape we did not anticipate degrades to nulls
        logger.warning(f"[NORMALIZE] Falling back to empty record: {e}")
        return CanonicalOrder(id=_as_text(first_path(raw, ORDER_ID_PATHS)), source=provenance, raw=raw)


def _normalize(raw: Dict[str, Any], provenance: str) -> CanonicalOrder:
    total = resolve_money(raw, TOTAL_PATHS)
    payment_status = _as_text(first_path(raw, PAYMENT_STATUS_PATHS))

    return CanonicalOrder(
        id=_as_text(first_path(raw, ORDER_ID_PATHS)),
        site_id=_as_text(first_path(raw, SITE_ID_PATHS)),
        number=resolve_order_number(raw),
        status=_as_text(first_path(raw, STATUS_PATHS)),
        payment_status=payment_status.upper() if payment_status else None,
        created_at=parse_datetime(first_path(raw, CREATED_AT_PATHS)),
        updated_at=parse_datetime(first_path(raw, UPDATED_AT_PATHS)),
        paid_at=parse_datetime(first_path(raw, PAID_AT_PATHS)),
        currency=_as_text(first_path(raw, CURRENCY_PATHS)) or total.currency,
        subtotal=resolve_money(raw, SUBTOTAL_PATHS).amount,
        tax_total=resolve_money(raw, TAX_PATHS).amount,
        shipping_total=resolve_money(raw, SHIPPING_PATHS).amount,
        discount_total=resolve_money(raw, DISCOUNT_PATHS).amount,
        total=total.amount,
        customer_name=resolve_customer_name(raw),
        customer_email=resolve_customer_email(raw),
        source=provenance,
        is_archived=is_archived_order(raw),
        raw=raw,
    )
