"""
Unit tests for the Wix REST client (HTTP mocked at requests.Session.request).
"""

import json
from datetime import date
from types import SimpleNamespace
from unittest import mock

import pytest
import requests

from fiscal_sync.exceptions import UpstreamAuthError, UpstreamError
from fiscal_sync.services.wix_client import ENDPOINTS, WixClient, format_since


def fake_response(status=200, payload=None):
    body = json.dumps(payload) if payload is not None else ''
    response = mock.NonCallableMock()
    response.status_code = status
    response.ok = 200 <= status < 300
    response.content = body.encode('utf-8')
    response.text = body
    response.json.side_effect = lambda: json.loads(body)
    return response


def make_tenant(tenant_id=1, instance_id='inst-1', refresh_token=None, site_id='site-1'):
    return SimpleNamespace(id=tenant_id, instance_id=instance_id, refresh_token=refresh_token, site_id=site_id)


def make_client(**kwargs):
    defaults = {'app_id': 'app', 'app_secret': 'secret', 'api_base': 'https://api.test', 'manage_base': 'https://manage.test',
                'oauth_url': 'https://api.test/oauth2/token', 'refresh_url': 'https://wix.test/oauth/access'}
    defaults.update(kwargs)
    return WixClient(**defaults)


class Router:
    """Answers requests by (method, url); records every call."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def __call__(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        handler = self.routes.get((method, url))
        if handler is None:
            return fake_response(404, {'message': 'not found'})
        if callable(handler):
            return handler(kwargs)
        return handler


TOKEN = ('POST', 'https://api.test/oauth2/token')


class TestAccessToken:

    def test_client_credentials_grant_is_cached(self):
        router = Router({TOKEN: fake_response(200, {'access_token': 'tok-1', 'expires_in': 14400})})
        client = make_client()
        tenant = make_tenant()

        with mock.patch.object(requests.Session, 'request', side_effect=router):
            assert client.get_access_token(tenant) == 'tok-1'
            assert client.get_access_token(tenant) == 'tok-1'

        assert len(router.calls) == 1
        body = router.calls[0][2]['json']
        assert body['grant_type'] == 'client_credentials'
        assert body['instance_id'] == 'inst-1'

    def test_refresh_grant_rotates_refresh_token(self):
        refresh = ('POST', 'https://wix.test/oauth/access')
        router = Router({refresh: fake_response(200, {'access_token': 'tok-2', 'refresh_token': 'new-refresh'})})
        client = make_client()
        tenant = make_tenant(instance_id=None, refresh_token='old-refresh')

        with mock.patch.object(requests.Session, 'request', side_effect=router):
            assert client.get_access_token(tenant) == 'tok-2'

        assert router.calls[0][2]['json']['grant_type'] == 'refresh_token'
        assert tenant.refresh_token == 'new-refresh'

    def test_static_token_short_circuits(self):
        client = make_client(static_token='static')
        with mock.patch.object(requests.Session, 'request') as request:
            assert client.get_access_token(make_tenant()) == 'static'
        request.assert_not_called()

    def test_missing_credentials(self):
        client = make_client()
        with pytest.raises(UpstreamAuthError):
            client.get_access_token(make_tenant(instance_id=None, refresh_token=None))

        client = make_client(app_id=None)
        with pytest.raises(UpstreamAuthError):
            client.get_access_token(make_tenant())

    def test_unauthorized_call_drops_cached_token(self):
        query = ('POST', 'https://api.test/ecom/v1/orders/query')
        router = Router({
            TOKEN: fake_response(200, {'access_token': 'tok'}),
            query: fake_response(401, {'message': 'expired'}),
        })
        client = make_client()
        tenant = make_tenant()

        with mock.patch.object(requests.Session, 'request', side_effect=router):
            with pytest.raises(UpstreamError):
                client.fetch_orders_page(tenant, '2024-01-01')
        assert client.tokens.get(tenant.id) is None

    def test_token_endpoint_failure(self):
        router = Router({TOKEN: fake_response(401, {'message': 'bad secret'})})
        with mock.patch.object(requests.Session, 'request', side_effect=router):
            with pytest.raises(UpstreamAuthError) as exc:
                make_client().get_access_token(make_tenant())
        assert exc.value.upstream_status == 401


class TestOrdersPage:

    def test_query_body_and_has_more_from_metadata(self):
        query = ('POST', 'https://api.test/ecom/v1/orders/query')
        router = Router({
            TOKEN: fake_response(200, {'access_token': 'tok'}),
            query: fake_response(200, {'orders': [{'id': 'o1'}, {'id': 'o2'}], 'metadata': {'hasNext': True, 'cursors': {'next': 'c2'}}}),
        })
        with mock.patch.object(requests.Session, 'request', side_effect=router):
            page = make_client().fetch_orders_page(make_tenant(), date(2024, 1, 1), offset=10, limit=2,
                                                   payment_status='PAID')

        assert [o['id'] for o in page.orders] == ['o1', 'o2']
        assert page.next_offset == 12
        assert page.has_more is True
        assert page.next_cursor == 'c2'

        method, url, kwargs = router.calls[-1]
        query_body = kwargs['json']['query']
        assert query_body['filter']['createdDate'] == {'$gte': '2024-01-01T00:00:00.000Z'}
        assert query_body['filter']['paymentStatus'] == {'$eq': 'PAID'}
        assert query_body['paging'] == {'limit': 2, 'offset': 10}
        assert kwargs['headers']['Authorization'] == 'Bearer tok'
        assert kwargs['headers']['wix-site-id'] == 'site-1'

    def test_has_more_from_page_size(self):
        query = ('POST', 'https://api.test/ecom/v1/orders/query')
        router = Router({
            TOKEN: fake_response(200, {'access_token': 'tok'}),
            query: fake_response(200, {'orders': [{'id': 'o1'}]}),
        })
        with mock.patch.object(requests.Session, 'request', side_effect=router):
            page = make_client().fetch_orders_page(make_tenant(), '2024-01-01', limit=1)
        assert page.has_more is True

        router.routes[query] = fake_response(200, {'orders': []})
        with mock.patch.object(requests.Session, 'request', side_effect=router):
            page = make_client().fetch_orders_page(make_tenant(), '2024-01-01', offset=1, limit=1)
        assert page.has_more is False
        assert page.next_offset == 1

    def test_non_2xx_raises_upstream_error(self):
        query = ('POST', 'https://api.test/ecom/v1/orders/query')
        router = Router({
            TOKEN: fake_response(200, {'access_token': 'tok'}),
            query: fake_response(503, {'message': 'unavailable'}),
        })
        with mock.patch.object(requests.Session, 'request', side_effect=router):
            with pytest.raises(UpstreamError) as exc:
                make_client().fetch_orders_page(make_tenant(), '2024-01-01')
        assert exc.value.upstream_status == 503
        assert exc.value.url == 'https://api.test/ecom/v1/orders/query'
        assert 'unavailable' in exc.value.body


class TestEndpointVariants:

    def test_endpoint_table_order(self):
        detail = ENDPOINTS['order_detail']
        assert detail[0].method == 'GET'
        assert detail[1].id_in_body is True
        assert len(ENDPOINTS['payments_query']) == 5

    def test_order_detail_falls_back_to_post_variant(self):
        router = Router({
            TOKEN: fake_response(200, {'access_token': 'tok'}),
            ('POST', 'https://api.test/ecom/v1/orders/get'): fake_response(200, {'order': {'id': 'o1', 'number': '7'}}),
        })
        with mock.patch.object(requests.Session, 'request', side_effect=router):
            detail = make_client().fetch_order_detail(make_tenant(), 'o1')

        assert detail == {'id': 'o1', 'number': '7'}
        assert router.calls[1][:2] == ('GET', 'https://api.test/ecom/v1/orders/o1')
        assert router.calls[2][2]['json'] == {'id': 'o1'}

    def test_returns_none_when_all_variants_fail(self):
        router = Router({TOKEN: fake_response(200, {'access_token': 'tok'})})
        with mock.patch.object(requests.Session, 'request', side_effect=router):
            assert make_client().fetch_payment_by_id(make_tenant(), 'p1') is None

    def test_transaction_ref_from_second_variant(self):
        router = Router({
            TOKEN: fake_response(200, {'access_token': 'tok'}),
            ('POST', 'https://api.test/_api/payments/v1/transactions/query'): fake_response(200, {
                'transactions': [{'id': 't1', 'status': 'APPROVED', 'providerTransactionId': 'pi_ABC'}]
            }),
        })
        with mock.patch.object(requests.Session, 'request', side_effect=router):
            assert make_client().fetch_transaction_ref_for_order(make_tenant(), 'o1') == 'pi_ABC'

    def test_payment_record_by_order_number(self):
        def answer(kwargs):
            query_filter = kwargs['json']['query']['filter']
            if 'orderNumber' in query_filter:
                return fake_response(200, {'payments': [{
                    'id': 'pay-1', 'status': 'COMPLETED', 'paidDate': '2024-03-01T10:00:00Z',
                    'regularPaymentDetails': {'providerTransactionId': 'pi_XYZ', 'paymentMethod': 'CreditCard'},
                }]})
            return fake_response(200, {'payments': []})

        router = Router({
            TOKEN: fake_response(200, {'access_token': 'tok'}),
            ('POST', 'https://api.test/payments/v1/payments/query'): answer,
        })
        with mock.patch.object(requests.Session, 'request', side_effect=router):
            record = make_client().fetch_payment_record_for_order(make_tenant(), 'o1', '10001')

        assert record.found is True
        assert record.payment_id == 'pay-1'
        assert record.transaction_ref == 'pi_XYZ'
        assert record.paid_at == '2024-03-01T10:00:00Z'
        assert record.summary['methodLabel'] == 'CreditCard'

    def test_auth_error_is_not_swallowed_by_variant_fallback(self):
        router = Router({TOKEN: fake_response(500, {'message': 'down'})})
        with mock.patch.object(requests.Session, 'request', side_effect=router):
            with pytest.raises(UpstreamAuthError):
                make_client().fetch_order_detail(make_tenant(), 'o1')


class TestPaymentsCache:

    def test_batch_payments_go_through_cache(self):
        cache = mock.Mock()
        cache.memoize.return_value = [{'id': 'cached'}]
        client = make_client(cache=cache, payments_cache_ttl=90)

        assert client.fetch_all_payments(make_tenant(tenant_id=7), limit=50) == [{'id': 'cached'}]
        args, kwargs = cache.memoize.call_args
        assert args[:3] == (7, 'payments', 'batch:50')
        assert kwargs['ttl'] == 90


def test_format_since():
    assert format_since(date(2024, 5, 1)) == '2024-05-01T00:00:00.000Z'
    assert format_since('2024-05-01T00:00:00.000Z') == '2024-05-01T00:00:00.000Z'
