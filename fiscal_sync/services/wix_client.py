"""
Wix REST API client.

Wix has moved payment and transaction endpoints between hosts and path
prefixes over time. Every known variant lives in the ENDPOINTS table below
and is tried in order by _try_variants(); retiring a variant is a one-line change.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
from flask import current_app

from fiscal_sync.exceptions import UpstreamError, UpstreamAuthError
from fiscal_sync.services.payment_extractors import (
    extract_paid_at_from_payment,
    extract_payment_summary_from_payment,
    extract_transaction_ref_from_payment,
    pick_preferred_payment,
)
from fiscal_sync.services.token_cache import TokenCache

logger = logging.getLogger(__name__)

API = 'api'
MANAGE = 'manage'

# Wix tokens from client_credentials live 4 hours, refresh-token grants 5 minutes
DEFAULT_CLIENT_CREDENTIALS_TTL = 4 * 60 * 60
DEFAULT_REFRESH_GRANT_TTL = 5 * 60

MAX_ERROR_BODY = 2000


@dataclass(frozen=True)
class Endpoint:
    """One upstream endpoint shape: HTTP method, host alias and path template."""
    method: str
    host: str
    path: str
    # POST variants of a by-id lookup send the id in the body instead of the path
    id_in_body: bool = False

    def url(self, bases: Dict[str, str], **params) -> str:
        return bases[self.host].rstrip('/') + self.path.format(**params)


ENDPOINTS: Dict[str, Tuple[Endpoint, ...]] = {
    'orders_query': (
        Endpoint('POST', API, '/ecom/v1/orders/query'),
    ),
    'order_detail': (
        Endpoint('GET', API, '/ecom/v1/orders/{order_id}'),
        Endpoint('POST', API, '/ecom/v1/orders/get', id_in_body=True),
    ),
    'payments_query': (
        Endpoint('POST', API, '/payments/v1/payments/query'),
        Endpoint('POST', API, '/_api/payments/v1/payments/query'),
        Endpoint('POST', API, '/_api/ecom-payments/v1/payments/query'),
        Endpoint('POST', MANAGE, '/_api/payments/v1/payments/query'),
        Endpoint('POST', MANAGE, '/_api/ecom-payments/v1/payments/query'),
    ),
    'transactions_query': (
        Endpoint('POST', API, '/payments/v1/transactions/query'),
        Endpoint('POST', API, '/_api/payments/v1/transactions/query'),
        Endpoint('POST', API, '/_api/ecom-payments/v1/transactions/query'),
        Endpoint('POST', MANAGE, '/_api/payments/v1/transactions/query'),
        Endpoint('POST', MANAGE, '/_api/ecom-payments/v1/transactions/query'),
    ),
    'order_payments': (
        Endpoint('GET', API, '/ecom/v1/payments/orders/{order_id}'),
        Endpoint('GET', API, '/v1/payments/orders/{order_id}'),
        Endpoint('GET', API, '/_api/ecom-payments/v1/payments/orders/{order_id}'),
        Endpoint('GET', API, '/_api/payments/v1/payments/orders/{order_id}'),
        Endpoint('GET', MANAGE, '/_api/ecom-payments/v1/payments/orders/{order_id}'),
    ),
    'payment_by_id': (
        Endpoint('GET', API, '/payments/v1/payments/{payment_id}'),
        Endpoint('GET', API, '/_api/payments/v1/payments/{payment_id}'),
        Endpoint('GET', MANAGE, '/_api/payments/v1/payments/{payment_id}'),
        Endpoint('POST', API, '/payments/v1/payments/get', id_in_body=True),
        Endpoint('POST', API, '/_api/payments/v1/payments/get', id_in_body=True),
    ),
}

# Filters tried, in order, when looking up the payment record of one order
PAYMENT_RECORD_FILTERS = ('orderId', 'orderNumber', 'referenceId')


@dataclass
class OrdersPage:
    orders: List[Dict[str, Any]] = field(default_factory=list)
    next_offset: int = 0
    next_cursor: Optional[str] = None
    has_more: bool = False
    total: Optional[int] = None


@dataclass
class PaymentRecord:
    payment_id: Optional[str] = None
    transaction_ref: Optional[str] = None
    paid_at: Optional[str] = None
    summary: Optional[Dict[str, Any]] = None
    payment: Optional[Dict[str, Any]] = None

    @property
    def found(self) -> bool:
        return self.payment is not None


def format_since(since: Any) -> str:
    """Render a date/datetime/ISO string as the timestamp Wix filters expect."""
    if isinstance(since, datetime):
        if since.tzinfo is not None:
            since = since.astimezone(timezone.utc)
        return since.strftime('%Y-%m-%dT%H:%M:%S.') + f"{since.microsecond // 1000:03d}Z"
    if isinstance(since, date):
        return f"{since.isoformat()}T00:00:00.000Z"
    return str(since)


def _list_from(data: Any, *keys: str) -> List[Dict[str, Any]]:
    if not isinstance(data, dict):
        return []
    for key in keys:
        value = data.get(key)
        if isinstance(value, list):
            return [item for item in value if isinstance(item, dict)]
    return []


def _payments_from(data: Any) -> List[Dict[str, Any]]:
    payments = _list_from(data, 'payments', 'transactions', 'items', 'results')
    if payments:
        return payments
    nested = data.get('orderTransactions') if isinstance(data, dict) else None
    return _list_from(nested, 'payments')


class WixClient:
    """Client for the Wix eCommerce and Payments APIs, one per process."""

    def __init__(
        self,
        api_base: str = 'https://www.wixapis.com',
        manage_base: str = 'https://manage.wix.com',
        oauth_url: str = 'https://www.wixapis.com/oauth2/token',
        refresh_url: str = 'https://www.wix.com/oauth/access',
        app_id: Optional[str] = None,
        app_secret: Optional[str] = None,
        static_token: Optional[str] = None,
        timeout: int = 20,
        refresh_margin: int = 60,
        cache=None,
        payments_cache_ttl: int = 120,
        http: Optional[requests.Session] = None,
    ):
        self.bases = {API: api_base, MANAGE: manage_base}
        self.oauth_url = oauth_url
        self.refresh_url = refresh_url
        self.app_id = app_id
        self.app_secret = app_secret
        self.static_token = static_token
        self.timeout = timeout
        self.cache = cache
        self.payments_cache_ttl = payments_cache_ttl
        self.tokens = TokenCache(refresh_margin=refresh_margin)
        self.http = http or requests.Session()

    @classmethod
    def from_config(cls, config, cache=None) -> 'WixClient':
        return cls(
            api_base=config.get('WIX_API_BASE', 'https://www.wixapis.com'),
            manage_base=config.get('WIX_MANAGE_BASE', 'https://manage.wix.com'),
            oauth_url=config.get('WIX_OAUTH_URL', 'https://www.wixapis.com/oauth2/token'),
            refresh_url=config.get('WIX_REFRESH_URL', 'https://www.wix.com/oauth/access'),
            app_id=config.get('WIX_APP_ID'),
            app_secret=config.get('WIX_APP_SECRET'),
            static_token=config.get('WIX_ACCESS_TOKEN'),
            timeout=config.get('WIX_TIMEOUT_SECONDS', 20),
            refresh_margin=config.get('TOKEN_REFRESH_MARGIN_SECONDS', 60),
            cache=cache,
            payments_cache_ttl=config.get('PAYMENTS_CACHE_TTL', 120),
        )

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def get_access_token(self, tenant) -> str:
        """
        Return a valid access token for the tenant.

        Uses the client_credentials grant when the tenant has an app instance
        id, the refresh_token grant for legacy installs. Tokens are cached
        per tenant until less than the refresh margin remains.
        """
        if self.static_token:
            return self.static_token

        cached = self.tokens.get(tenant.id)
        if cached:
            return cached

        if not (self.app_id and self.app_secret):
            raise UpstreamAuthError("WIX_APP_ID / WIX_APP_SECRET are not configured")

        if tenant.instance_id:
            data = self._token_request(self.oauth_url, {
                'grant_type': 'client_credentials',
                'client_id': self.app_id,
                'client_secret': self.app_secret,
                'instance_id': tenant.instance_id,
            })
            default_ttl = DEFAULT_CLIENT_CREDENTIALS_TTL
        elif tenant.refresh_token:
            data = self._token_request(self.refresh_url, {
                'grant_type': 'refresh_token',
                'client_id': self.app_id,
                'client_secret': self.app_secret,
                'refresh_token': tenant.refresh_token,
            })
            default_ttl = DEFAULT_REFRESH_GRANT_TTL
            # Wix rotates refresh tokens; the caller's session persists the change
            if data.get('refresh_token'):
                tenant.refresh_token = data['refresh_token']
        else:
            raise UpstreamAuthError(f"Tenant {tenant.id} has neither instance_id nor refresh_token")

        access_token = data.get('access_token')
        if not access_token:
            raise UpstreamAuthError(f"Token response for tenant {tenant.id} carried no access_token")

        self.tokens.put(tenant.id, access_token, data.get('expires_in') or default_ttl)
        logger.info(f"[WIX] Access token refreshed for tenant {tenant.id}")
        return access_token

    def _token_request(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self.http.request('POST', url, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            raise UpstreamAuthError(f"Token request failed: {e}", url=url)
        if not response.ok:
            raise UpstreamAuthError(
                f"Token request failed: {response.status_code}",
                upstream_status=response.status_code,
                body=response.text[:MAX_ERROR_BODY],
                url=url,
            )
        try:
            return response.json() or {}
        except ValueError:
            raise UpstreamAuthError("Token response is not JSON", upstream_status=response.status_code, url=url)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _headers(self, tenant) -> Dict[str, str]:
        token = self.get_access_token(tenant)
        headers = {
            'Authorization': token if token.startswith('Bearer ') else f'Bearer {token}',
            'Content-Type': 'application/json',
        }
        if tenant.site_id:
            headers['wix-site-id'] = tenant.site_id
        return headers

    def _request(self, tenant, method: str, url: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Perform one call; non-2xx and transport failures raise UpstreamError."""
        try:
            response = self.http.request(
                method, url,
                json=body if method != 'GET' else None,
                headers=self._headers(tenant),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise UpstreamError(f"{method} {url} failed: {e}", url=url)

        if not response.ok:
            if response.status_code == 401:
                # Revoked or rotated upstream; next call fetches a fresh token
                self.tokens.invalidate(tenant.id)
            raise UpstreamError(
                f"{method} {url} returned {response.status_code}",
                upstream_status=response.status_code,
                body=response.text[:MAX_ERROR_BODY],
                url=url,
            )
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            raise UpstreamError(f"{method} {url} returned non-JSON body",
                                upstream_status=response.status_code, body=response.text[:MAX_ERROR_BODY], url=url)
        return data if isinstance(data, dict) else {'items': data}

    def _try_variants(self, tenant, key: str, extract: Callable[[Dict[str, Any]], Any],
                      body: Optional[Dict[str, Any]] = None, body_id: Optional[str] = None, **params) -> Any:
        """Try each endpoint variant of `key` in order; return the first non-empty extraction."""
        for endpoint in ENDPOINTS[key]:
            url = endpoint.url(self.bases, **params)
            request_body = {'id': body_id} if endpoint.id_in_body else body
            try:
                data = self._request(tenant, endpoint.method, url, request_body)
            except UpstreamAuthError:
                raise
            except UpstreamError as e:
                logger.debug(f"[WIX] {key} variant {endpoint.method} {url} failed: {e.upstream_status}")
                continue
            result = extract(data)
            if result:
                return result
        return None

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def fetch_orders_page(self, tenant, since, offset: int = 0, limit: int = 100,
                          payment_status: Optional[str] = None, cursor: Optional[str] = None) -> OrdersPage:
        """
        Fetch one page of orders created at or after `since`, oldest first.

        Paging is offset based. `cursor` is accepted for callers that still
        hold one but is never used to page.
        """
        query_filter: Dict[str, Any] = {'createdDate': {'$gte': format_since(since)}}
        if payment_status:
            query_filter['paymentStatus'] = {'$eq': payment_status}

        body = {
            'query': {
                'filter': query_filter,
                'sort': [{'fieldName': 'createdDate', 'order': 'ASC'}],
                'paging': {'limit': limit, 'offset': offset},
            }
        }
        endpoint = ENDPOINTS['orders_query'][0]
        url = endpoint.url(self.bases)
        logger.info(f"[WIX] Querying orders for tenant {tenant.id} since {format_since(since)} offset {offset}")
        data = self._request(tenant, endpoint.method, url, body)

        orders = _list_from(data, 'orders', 'results', 'items')
        if not orders and isinstance(data.get('order'), dict):
            orders = [data['order']]

        metadata = data.get('metadata') if isinstance(data.get('metadata'), dict) else {}
        total = metadata.get('total')
        total = total if isinstance(total, int) else None
        next_offset = offset + len(orders)

        if isinstance(metadata.get('hasNext'), bool):
            has_more = metadata['hasNext']
        elif total is not None:
            has_more = next_offset < total
        else:
            has_more = len(orders) == limit
        if not orders:
            has_more = False

        paging = data.get('paging') if isinstance(data.get('paging'), dict) else {}
        cursors = metadata.get('cursors') if isinstance(metadata.get('cursors'), dict) else {}
        next_cursor = (
            cursors.get('next')
            or (metadata.get('paging') or {}).get('cursor')
            or paging.get('nextCursor')
        )

        return OrdersPage(orders=orders, next_offset=next_offset, next_cursor=next_cursor,
                          has_more=has_more, total=total)

    def fetch_order_detail(self, tenant, order_id: str) -> Optional[Dict[str, Any]]:
        """Full order by id, REST-path GET first, RPC-style POST second."""
        def extract(data):
            order = data.get('order')
            if isinstance(order, dict) and order:
                return order
            return data if data.get('id') else None

        return self._try_variants(tenant, 'order_detail', extract, body_id=order_id, order_id=order_id)

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def fetch_all_payments(self, tenant, limit: int = 500) -> List[Dict[str, Any]]:
        """Batch of the tenant's most recent payments (cached for a short TTL)."""
        def load():
            body = {
                'query': {
                    'sort': [{'fieldName': 'createdDate', 'order': 'DESC'}],
                    'paging': {'limit': limit},
                }
            }
            payments = self._try_variants(tenant, 'payments_query', _payments_from, body=body)
            logger.info(f"[WIX] Batch payments for tenant {tenant.id}: {len(payments or [])}")
            return payments or []

        if self.cache is None:
            return load()
        return self.cache.memoize(tenant.id, 'payments', f'batch:{limit}', load, ttl=self.payments_cache_ttl)

    def fetch_transaction_ref_for_order(self, tenant, order_id: str) -> Optional[str]:
        def extract(data):
            return extract_transaction_ref_from_payment(pick_preferred_payment(_payments_from(data)))

        body = {'query': {'filter': {'orderId': {'$eq': order_id}}, 'paging': {'limit': 10}}}
        ref = self._try_variants(tenant, 'transactions_query', extract, body=body)
        if ref:
            return ref
        return self._try_variants(tenant, 'order_payments', extract, order_id=order_id)

    def fetch_payment_record_for_order(self, tenant, order_id: str,
                                       order_number: Optional[str] = None) -> PaymentRecord:
        """Payment record for one order, queried by order id, then number, then reference id."""
        values = {'orderId': order_id, 'orderNumber': order_number, 'referenceId': order_id}
        for filter_field in PAYMENT_RECORD_FILTERS:
            value = values[filter_field]
            if not value:
                continue
            body = {'query': {'filter': {filter_field: {'$eq': str(value)}}, 'paging': {'limit': 10}}}
            payment = self._try_variants(tenant, 'payments_query',
                                         lambda data: pick_preferred_payment(_payments_from(data)), body=body)
            if payment:
                return PaymentRecord(
                    payment_id=payment.get('id') or payment.get('_id'),
                    transaction_ref=extract_transaction_ref_from_payment(payment),
                    paid_at=extract_paid_at_from_payment(payment),
                    summary=extract_payment_summary_from_payment(payment),
                    payment=payment,
                )
        return PaymentRecord()

    def fetch_payment_by_id(self, tenant, payment_id: str) -> Optional[Dict[str, Any]]:
        def extract(data):
            payment = data.get('payment')
            if isinstance(payment, dict) and payment:
                return payment
            return data if data.get('id') else None

        return self._try_variants(tenant, 'payment_by_id', extract, body_id=payment_id, payment_id=payment_id)


def init_wix_client(app, cache=None) -> WixClient:
    """Create the process-wide Wix client and register it on the app."""
    client = WixClient.from_config(app.config, cache=cache)
    app.extensions['wix_client'] = client
    return client


def get_wix_client() -> WixClient:
    client = current_app.extensions.get('wix_client')
    if client is None:
        raise RuntimeError("Wix client not initialized.")
    return client
