import pytest
from datetime import date
import uuid

from fiscal_sync import create_app
from fiscal_sync.database import create_schema, drop_schema, get_session
from fiscal_sync.models import Tenant, CompanySettings
from fiscal_sync.services.wix_client import OrdersPage, PaymentRecord

CRON_HEADERS = {'Authorization': 'Bearer test-cron-secret'}


class FakeWixClient:
    """
    In-memory stand-in for WixClient.

    Orders are served in pages from `orders`. When `fail_at_offset` is set,
    fetch_orders_page raises `failure` for any offset at or beyond it.
    """

    def __init__(self, orders=None, payments=None, transaction_refs=None, details=None, records=None):
        self.orders = list(orders or [])
        self.payments = list(payments or [])
        self.transaction_refs = dict(transaction_refs or {})
        self.details = dict(details or {})
        self.records = dict(records or {})
        self.fail_at_offset = None
        self.failure = None
        self.page_calls = []

    def fetch_orders_page(self, tenant, since, offset=0, limit=100, payment_status=None, cursor=None):
        self.page_calls.append(offset)
        if self.fail_at_offset is not None and offset >= self.fail_at_offset:
            raise self.failure
        orders = self.orders
        if payment_status:
            orders = [o for o in orders if o.get('paymentStatus') == payment_status]
        page = orders[offset:offset + limit]
        next_offset = offset + len(page)
        return OrdersPage(orders=page, next_offset=next_offset,
                          has_more=next_offset < len(orders), total=len(orders))

    def fetch_order_detail(self, tenant, order_id):
        return self.details.get(order_id)

    def fetch_all_payments(self, tenant, limit=500):
        return list(self.payments)

    def fetch_transaction_ref_for_order(self, tenant, order_id):
        return self.transaction_refs.get(order_id)

    def fetch_payment_record_for_order(self, tenant, order_id, order_number=None):
        return self.records.get(order_id, PaymentRecord())

    def fetch_payment_by_id(self, tenant, payment_id):
        return None


def make_order(order_id, total='100.00', payment_status='PAID', status='APPROVED',
               created='2024-03-01T10:00:00Z', transaction_ref='pi_test123',
               delivery='DHL Express', **extra):
    """A Wix order payload complete enough to skip the order-detail lookup."""
    order = {
        'id': order_id,
        'number': f'10{order_id[-2:]}',
        'status': status,
        'paymentStatus': payment_status,
        'createdDate': created,
        'priceSummary': {'total': {'amount': total, 'formattedAmount': f'{total} BGN'}},
        'currency': 'BGN',
        'buyerInfo': {'email': f'{order_id}@example.com'},
        'billingInfo': {'contactDetails': {'firstName': 'Ivan', 'lastName': 'Petrov'}},
        'shippingInfo': {
            'title': delivery,
            'logistics': {'shippingDestination': {'address': {'city': 'Sofia', 'addressLine': 'Vitosha 1'}}},
        },
    }
    if transaction_ref:
        order['paymentInfo'] = {'transactionId': transaction_ref}
    order.update(extra)
    return order


def configure_fiscal(session, tenant, fiscal_store_id='RF0001234', start=date(2024, 1, 1), cod=False):
    """Attach company fiscal settings to a tenant."""
    settings = CompanySettings(
        tenant_id=tenant.id,
        company_name=f'{tenant.name} Ltd',
        eik='123456789',
        fiscal_store_id=fiscal_store_id,
        receipts_start_date=start,
        cod_receipts_enabled=cod,
    )
    session.add(settings)
    session.commit()
    return settings


@pytest.fixture(scope='session')
def app():
    """Create application instance for testing."""
    app = create_app('config.TestConfig')
    return app


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def session(app):
    """Database session on a fresh schema (in-memory SQLite)."""
    with app.app_context():
        create_schema()
        session = get_session()
        yield session
        session.rollback()
        session.remove()
        drop_schema()


@pytest.fixture(scope='function')
def tenant1(session):
    """Create first test tenant."""
    suffix = str(uuid.uuid4())[:8]
    tenant = Tenant(
        slug=f'test-tenant-1-{suffix}',
        name=f'Test Tenant 1 {suffix}',
        site_id=f'site-1-{suffix}',
        instance_id=f'instance-1-{suffix}',
        active=True
    )
    session.add(tenant)
    session.commit()
    return tenant


@pytest.fixture(scope='function')
def tenant2(session):
    """Create second test tenant for isolation tests."""
    suffix = str(uuid.uuid4())[:8]
    tenant = Tenant(
        slug=f'test-tenant-2-{suffix}',
        name=f'Test Tenant 2 {suffix}',
        site_id=f'site-2-{suffix}',
        instance_id=f'instance-2-{suffix}',
        active=True
    )
    session.add(tenant)
    session.commit()
    return tenant


@pytest.fixture(scope='function')
def settings1(session, tenant1):
    """Fiscal settings for tenant1: store id set, receipts from 2024-01-01."""
    return configure_fiscal(session, tenant1)


@pytest.fixture(scope='function')
def settings2(session, tenant2):
    return configure_fiscal(session, tenant2)


@pytest.fixture(scope='function')
def fake_wix(app):
    """Swap the app's Wix client for a FakeWixClient for the duration of a test."""
    fake = FakeWixClient()
    original = app.extensions['wix_client']
    app.extensions['wix_client'] = fake
    yield fake
    app.extensions['wix_client'] = original
