"""
Integration tests for the order mirror upsert.
"""

from datetime import datetime
from decimal import Decimal

from fiscal_sync.models import WixOrder
from fiscal_sync.services.order_normalizer import normalize_order
from fiscal_sync.services.order_store import count_orders, get_order, upsert_order
from conftest import make_order


class TestUpsertOrder:

    def test_insert_then_overwrite(self, session, tenant1):
        tenant_id = tenant1.id
        upsert_order(session, tenant_id, normalize_order(make_order('o1', payment_status='NOT_PAID')))
        session.commit()

        stored = get_order(session, tenant_id, 'o1')
        assert stored.payment_status == 'NOT_PAID'
        assert stored.total == Decimal('100.00')
        assert stored.customer_email == 'o1@example.com'

        upsert_order(session, tenant_id, normalize_order(make_order('o1', total='80.00'), 'webhook'))
        session.commit()

        stored = get_order(session, tenant_id, 'o1')
        assert stored.payment_status == 'PAID'
        assert stored.total == Decimal('80.00')
        assert stored.source == 'webhook'
        assert count_orders(session, tenant_id) == 1

    def test_first_seen_at_is_kept(self, session, tenant1):
        tenant_id = tenant1.id
        upsert_order(session, tenant_id, normalize_order(make_order('o1')))
        session.commit()

        first_seen = datetime(2020, 1, 1, 12, 0, 0)
        session.query(WixOrder).filter_by(tenant_id=tenant_id, id='o1').update({'first_seen_at': first_seen})
        session.commit()

        upsert_order(session, tenant_id, normalize_order(make_order('o1', status='CANCELED')))
        session.commit()

        stored = get_order(session, tenant_id, 'o1')
        assert stored.status == 'CANCELED'
        assert stored.first_seen_at.replace(tzinfo=None) == first_seen

    def test_same_order_id_in_two_tenants(self, session, tenant1, tenant2):
        upsert_order(session, tenant1.id, normalize_order(make_order('o1', total='10.00')))
        upsert_order(session, tenant2.id, normalize_order(make_order('o1', total='20.00')))
        session.commit()

        assert get_order(session, tenant1.id, 'o1').total == Decimal('10.00')
        assert get_order(session, tenant2.id, 'o1').total == Decimal('20.00')

    def test_raw_payload_is_stored(self, session, tenant1):
        upsert_order(session, tenant1.id, normalize_order(make_order('o1')))
        session.commit()

        stored = get_order(session, tenant1.id, 'o1')
        assert stored.raw['id'] == 'o1'
        assert stored.raw['paymentInfo']['transactionId'] == 'pi_test123'
