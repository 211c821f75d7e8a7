"""
Integration tests for tenant isolation and operator authentication.
"""

from datetime import date

import pytest

from fiscal_sync.exceptions import NotFoundError
from fiscal_sync.models import Receipt
from fiscal_sync.services.order_normalizer import normalize_order
from fiscal_sync.services.receipt_service import (
    cancel_receipt, find_numbering_gaps, issue_refund_receipt, issue_sale_receipt, renumber_receipts
)
from fiscal_sync.services.sync_service import sync_orders_for_tenant
from fiscal_sync.services.tenant_service import get_tenant
from conftest import CRON_HEADERS, FakeWixClient, make_order


class TestReceiptIsolation:
    """Numbering and receipts never cross tenants."""

    def test_each_tenant_numbers_from_one(self, session, tenant1, tenant2, settings1, settings2):
        fake = FakeWixClient(orders=[make_order('o1'), make_order('o2')])

        sync_orders_for_tenant(session, fake, tenant1, date(2024, 1, 1))
        sync_orders_for_tenant(session, fake, tenant2, date(2024, 1, 1))

        for tenant_id in (tenant1.id, tenant2.id):
            ids = [r.id for r in session.query(Receipt).filter_by(tenant_id=tenant_id).order_by(Receipt.id)]
            assert ids == [1, 2]

    def test_refund_needs_sale_in_same_tenant(self, session, tenant1, tenant2):
        issue_sale_receipt(session, tenant1.id, normalize_order(make_order('o1')))

        with pytest.raises(NotFoundError):
            issue_refund_receipt(session, tenant2.id, 'o1')

    def test_cancel_cannot_reach_other_tenant(self, session, tenant1, tenant2):
        issue_sale_receipt(session, tenant1.id, normalize_order(make_order('o1')))

        with pytest.raises(NotFoundError):
            cancel_receipt(session, tenant2.id, 1)
        assert session.query(Receipt).filter_by(tenant_id=tenant1.id).count() == 1

    def test_renumber_only_touches_own_tenant(self, session, tenant1, tenant2):
        for order_id in ('o1', 'o2'):
            issue_sale_receipt(session, tenant1.id, normalize_order(make_order(order_id)))
            issue_sale_receipt(session, tenant2.id, normalize_order(make_order(order_id)))
        cancel_receipt(session, tenant1.id, 1)
        cancel_receipt(session, tenant2.id, 1)

        renumber_receipts(session, tenant1.id)

        assert find_numbering_gaps(session, tenant1.id)['missing'] == []
        assert find_numbering_gaps(session, tenant2.id)['missing'] == [1]


class TestTenantLookup:

    def test_by_id_and_site(self, session, tenant1):
        assert get_tenant(session, tenant1.id).id == tenant1.id
        assert get_tenant(session, site_id=tenant1.site_id).id == tenant1.id

    def test_inactive_tenant_is_hidden(self, session, tenant1):
        tenant1.active = False
        session.commit()
        with pytest.raises(NotFoundError):
            get_tenant(session, tenant1.id)


class TestOperatorAuth:

    @pytest.mark.parametrize('method,url', [
        ('post', '/sync/run'),
        ('post', '/sync/backfill'),
        ('get', '/sync/state'),
        ('post', '/receipts/refund'),
        ('post', '/receipts/cancel'),
        ('post', '/receipts/renumber'),
        ('get', '/receipts/gaps'),
        ('get', '/receipts/monthly'),
        ('get', '/receipts/audit'),
        ('post', '/sync/reevaluate'),
        ('post', '/cron/process-refunds'),
    ])
    def test_requires_cron_secret(self, client, method, url):
        response = getattr(client, method)(url)
        assert response.status_code == 403

        response = getattr(client, method)(url, headers={'Authorization': 'Bearer wrong'})
        assert response.status_code == 403

    def test_operator_header_is_audited(self, client, session, tenant1):
        tenant_id = tenant1.id
        issue_sale_receipt(session, tenant_id, normalize_order(make_order('o1')))

        headers = dict(CRON_HEADERS, **{'X-Operator': 'maria'})
        response = client.post('/receipts/cancel', json={'tenant_id': tenant_id, 'receipt_id': 1}, headers=headers)
        assert response.status_code == 200

        from fiscal_sync.models import AuditLog, AuditAction
        log = session.query(AuditLog).filter_by(action=AuditAction.RECEIPT_CANCELLED.value).one()
        assert log.user_id == 'maria'

    def test_health_is_public(self, client, session):
        response = client.get('/health')
        assert response.status_code == 200
        assert response.get_json() == {'status': 'ok', 'database': 'ok'}

    def test_metrics_expose_receipt_counters(self, client, session, tenant1):
        sync_orders_for_tenant(session, FakeWixClient(orders=[make_order('o2', payment_status='NOT_PAID')]),
                               tenant1, date(2024, 1, 1))

        body = client.get('/metrics').get_data(as_text=True)
        assert 'receipts_skipped_total{reason="not_paid"}' in body
        assert 'sync_runs_total{status="done"}' in body
        assert 'http_requests_total' in body
