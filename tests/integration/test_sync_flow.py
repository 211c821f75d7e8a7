"""
Integration tests for the sync orchestrator: end to end issuance and resumption.
"""

from datetime import date
from decimal import Decimal

import pytest

from fiscal_sync.exceptions import BusinessLogicError, UpstreamError
from fiscal_sync.models import AuditLog, AuditAction, Receipt, WixOrder
from fiscal_sync.services.sync_service import (
    process_order_payload, reevaluate_stored_orders, sync_orders_for_tenant
)
from fiscal_sync.services.sync_state_service import get_sync_state
from conftest import CRON_HEADERS, FakeWixClient, configure_fiscal, make_order


def receipt_ids(session, tenant_id):
    return [r.id for r in session.query(Receipt).filter_by(tenant_id=tenant_id).order_by(Receipt.id).all()]


class TestEndToEnd:

    def test_sale_then_refund(self, session, tenant1, settings1):
        fake = FakeWixClient(orders=[make_order('o1')])

        result = sync_orders_for_tenant(session, fake, tenant1, date(2024, 1, 1))
        assert result.status == 'done'
        assert result.receipts_issued == 1

        sale = session.query(Receipt).filter_by(tenant_id=tenant1.id, order_id='o1').one()
        assert sale.id == 1
        assert sale.type == 'sale'

        fake.orders = [make_order('o1', payment_status='REFUNDED')]
        result = sync_orders_for_tenant(session, fake, tenant1, date(2024, 1, 1))
        assert result.refunds_issued == 1

        refund = session.query(Receipt).filter_by(tenant_id=tenant1.id, type='refund').one()
        assert refund.id == 2
        assert refund.reference_receipt_id == 1
        assert refund.refund_amount == Decimal('100.00')

        # A third pass has nothing left to refund
        result = sync_orders_for_tenant(session, fake, tenant1, date(2024, 1, 1))
        assert result.refunds_issued == 0
        assert receipt_ids(session, tenant1.id) == [1, 2]

    def test_skip_reasons_are_counted(self, session, tenant1, settings1):
        fake = FakeWixClient(orders=[
            make_order('o1'),
            make_order('o2', payment_status='NOT_PAID'),
            make_order('o3', created='2023-06-01T00:00:00Z'),
            make_order('o4', transaction_ref=None),
        ])

        result = sync_orders_for_tenant(session, fake, tenant1, date(2023, 1, 1))

        assert result.total == 4
        assert result.receipts_issued == 1
        assert result.skip_reasons == {
            'not_paid': 1,
            'before_start_date': 1,
            'missing_transaction_ref': 1,
        }
        assert session.query(WixOrder).filter_by(tenant_id=tenant1.id).count() == 4

    def test_enrichment_supplies_transaction_ref(self, session, tenant1, settings1):
        fake = FakeWixClient(orders=[make_order('o1', transaction_ref=None)],
                             transaction_refs={'o1': 'pi_enriched1'})

        result = sync_orders_for_tenant(session, fake, tenant1, date(2024, 1, 1))

        assert result.receipts_issued == 1
        sale = session.query(Receipt).filter_by(tenant_id=tenant1.id).one()
        assert sale.payload['transactionRef'] == 'pi_enriched1'

    def test_unconfigured_tenant_gets_no_receipts(self, session, tenant1):
        fake = FakeWixClient(orders=[make_order('o1')])
        result = sync_orders_for_tenant(session, fake, tenant1, date(2024, 1, 1))

        assert result.receipts_issued == 0
        assert result.skip_reasons == {'missing_fiscal_store_id': 1}

    def test_order_failure_does_not_stop_the_run(self, session, tenant1, settings1):
        fake = FakeWixClient(orders=[{'number': 'no-id'}, make_order('o2')])

        result = sync_orders_for_tenant(session, fake, tenant1, date(2024, 1, 1))

        assert result.status == 'done'
        assert result.receipts_issued == 1
        assert len(result.errors) == 1

    def test_audit_trail(self, session, tenant1, settings1):
        fake = FakeWixClient(orders=[make_order('o1')])
        sync_orders_for_tenant(session, fake, tenant1, date(2024, 1, 1))

        actions = [log.action for log in session.query(AuditLog).filter_by(tenant_id=tenant1.id).order_by(AuditLog.id)]
        assert actions == [
            AuditAction.SYNC_STARTED.value,
            AuditAction.RECEIPT_ISSUED.value,
            AuditAction.SYNC_COMPLETED.value,
        ]

    def test_process_order_payload_is_idempotent(self, session, tenant1, settings1):
        fake = FakeWixClient()
        first = process_order_payload(session, fake, tenant1, None, make_order('o1'))
        second = process_order_payload(session, fake, tenant1, None, make_order('o1'))

        assert first.created is True
        assert second.action == 'none'
        assert receipt_ids(session, tenant1.id) == [1]


class TestResumption:

    def test_page_budget_then_resume(self, session, tenant1, settings1):
        fake = FakeWixClient(orders=[make_order(f'o{n}') for n in range(1, 6)])

        first = sync_orders_for_tenant(session, fake, tenant1, date(2024, 1, 1), limit=2, max_pages=1)
        assert first.status == 'partial'
        assert first.next_offset == 2
        assert first.cursor == '2'
        assert get_sync_state(session, tenant1.id).cursor == '2'

        second = sync_orders_for_tenant(session, fake, tenant1, date(2024, 1, 1), limit=2, max_pages=1)
        assert second.start_offset == 2
        assert second.next_offset == 4

        third = sync_orders_for_tenant(session, fake, tenant1, date(2024, 1, 1), limit=2, max_pages=1)
        assert third.status == 'done'
        assert third.cursor is None

        assert fake.page_calls == [0, 2, 4]
        assert receipt_ids(session, tenant1.id) == [1, 2, 3, 4, 5]

    def test_new_window_does_not_resume(self, session, tenant1, settings1):
        fake = FakeWixClient(orders=[make_order(f'o{n}') for n in range(1, 4)])
        sync_orders_for_tenant(session, fake, tenant1, date(2024, 1, 1), limit=1, max_pages=1)

        result = sync_orders_for_tenant(session, fake, tenant1, date(2024, 2, 1), limit=1, max_pages=1)
        assert result.start_offset == 0

    def test_upstream_failure_keeps_last_completed_offset(self, session, tenant1, settings1):
        fake = FakeWixClient(orders=[make_order(f'o{n}') for n in range(1, 6)])
        fake.fail_at_offset = 2
        fake.failure = UpstreamError("orders query returned 503", upstream_status=503)

        failed = sync_orders_for_tenant(session, fake, tenant1, date(2024, 1, 1), limit=2, max_pages=5)
        assert failed.status == 'partial'
        assert failed.cursor == '2'
        assert failed.errors[0]['upstream_status'] == 503

        state = get_sync_state(session, tenant1.id)
        assert state.status == 'partial'
        assert 'returned 503' in state.last_error

        fake.fail_at_offset = None
        resumed = sync_orders_for_tenant(session, fake, tenant1, date(2024, 1, 1), limit=2, max_pages=5)
        assert resumed.status == 'done'
        assert resumed.start_offset == 2
        assert receipt_ids(session, tenant1.id) == [1, 2, 3, 4, 5]


class TestSyncEndpoints:

    def test_backfill_endpoint_resumes(self, client, session, tenant1, settings1, fake_wix):
        tenant_id = tenant1.id
        fake_wix.orders = [make_order(f'o{n}') for n in range(1, 4)]
        body = {'tenant_id': tenant_id, 'start_date': '2024-01-01', 'max_pages': 1, 'limit': 2}

        response = client.post('/sync/backfill', json=body, headers=CRON_HEADERS)
        assert response.status_code == 200
        result = response.get_json()['result']
        assert result['status'] == 'partial'
        assert result['receipts_issued'] == 2

        response = client.post('/sync/backfill', json=body, headers=CRON_HEADERS)
        result = response.get_json()['result']
        assert result['status'] == 'done'
        assert result['start_offset'] == 2

        response = client.get(f'/sync/state?tenant_id={tenant_id}', headers=CRON_HEADERS)
        state = response.get_json()['state']
        assert state['status'] == 'done'
        assert state['start_date'] == '2024-01-01'

    def test_run_endpoint_covers_all_tenants(self, client, session, tenant1, tenant2, settings1, settings2, fake_wix):
        fake_wix.orders = [make_order('o1'), make_order('o2')]

        response = client.post('/sync/run', headers=CRON_HEADERS)
        assert response.status_code == 200
        results = response.get_json()['results']
        assert len(results) == 2
        assert all(r['receipts_issued'] == 2 for r in results)

    def test_backfill_requires_tenant(self, client, session):
        response = client.post('/sync/backfill', json={}, headers=CRON_HEADERS)
        assert response.status_code == 400


class TestReevaluation:
    """Receipt decisions re-run over the local mirror after settings change."""

    def test_registering_store_id_issues_pending_sales(self, session, tenant1):
        fake = FakeWixClient(orders=[
            make_order('o1', created='2024-03-01T10:00:00Z'),
            make_order('o2', created='2024-03-05T10:00:00Z'),
            make_order('o3', created='2024-04-02T10:00:00Z'),
        ])
        sync_orders_for_tenant(session, fake, tenant1, date(2024, 1, 1))
        assert receipt_ids(session, tenant1.id) == []

        configure_fiscal(session, tenant1)
        result = reevaluate_stored_orders(session, tenant1, date(2024, 3, 1), date(2024, 4, 1))

        assert result.status == 'done'
        assert result.total == 2
        assert result.receipts_issued == 2
        sales = session.query(Receipt).filter_by(tenant_id=tenant1.id).order_by(Receipt.id).all()
        assert [r.order_id for r in sales] == ['o1', 'o2']

    def test_reevaluation_is_idempotent(self, session, tenant1, settings1):
        sync_orders_for_tenant(session, FakeWixClient(orders=[make_order('o1')]), tenant1, date(2024, 1, 1))

        result = reevaluate_stored_orders(session, tenant1, '2024-01-01', '2025-01-01')

        assert result.total == 1
        assert result.receipts_issued == 0
        assert receipt_ids(session, tenant1.id) == [1]

    def test_empty_range_rejected(self, session, tenant1):
        with pytest.raises(BusinessLogicError):
            reevaluate_stored_orders(session, tenant1, '2024-03-01', '2024-03-01')

    def test_endpoint(self, client, session, tenant1):
        tenant_id = tenant1.id
        sync_orders_for_tenant(session, FakeWixClient(orders=[make_order('o1')]), tenant1, date(2024, 1, 1))
        configure_fiscal(session, tenant1)

        body = {'tenant_id': tenant_id, 'start': '2024-03-01', 'end': '2024-03-02'}
        response = client.post('/sync/reevaluate', json=body, headers=CRON_HEADERS)
        assert response.status_code == 200
        assert response.get_json()['result']['receipts_issued'] == 1

        response = client.post('/sync/reevaluate', json={'tenant_id': tenant_id}, headers=CRON_HEADERS)
        assert response.status_code == 400
