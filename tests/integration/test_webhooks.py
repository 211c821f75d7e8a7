"""
Integration tests for the Wix order webhook endpoint and the refund queue.

In testing no app public key is configured, so bodies are posted as plain
JSON claims instead of signed JWTs.
"""

import json

import jwt
import pytest

from fiscal_sync.exceptions import BusinessLogicError, UnauthorizedError
from fiscal_sync.models import PendingRefund, Receipt, WebhookLog
from fiscal_sync.services.webhook_service import decode_webhook_body, parse_event
from conftest import CRON_HEADERS, make_order

WEBHOOK_URL = '/webhooks/wix/orders'


def webhook_body(instance_id, event_id, envelope, event_type='wix.ecom.v1.order_created'):
    envelope = dict(envelope, id=event_id)
    return json.dumps({
        'data': json.dumps({
            'data': json.dumps(envelope),
            'instanceId': instance_id,
            'eventType': event_type,
        })
    })


def order_created(instance_id, event_id, order):
    return webhook_body(instance_id, event_id, {'entityId': order['id'], 'createdEvent': {'entity': order}})


def order_refunded(instance_id, event_id, order_id, refund):
    return webhook_body(instance_id, event_id, {'entityId': order_id, 'actionEvent': {'body': {'refund': refund}}},
                        event_type='wix.ecom.v1.order_refunded')


class TestEventParsing:

    def test_nested_json_claims(self):
        order = make_order('o1')
        event = parse_event(json.loads(order_created('inst-1', 'evt-1', order)))

        assert event.event_id == 'evt-1'
        assert event.instance_id == 'inst-1'
        assert event.event_type == 'wix.ecom.v1.order_created'
        assert event.order_id == 'o1'
        assert event.is_refund is False

    def test_updated_event_entity(self):
        claims = {'data': {'data': {'id': 'evt-2', 'updatedEvent': {'currentEntity': {'id': 'o2'}}},
                           'instanceId': 'inst-1'}}
        assert parse_event(claims).order_id == 'o2'

    def test_refund_event_order_id_from_entity_id(self):
        body = order_refunded('inst-1', 'evt-3', 'o3', {'id': 'rf-1', 'amount': {'amount': '10.00'}})
        event = parse_event(json.loads(body))
        assert event.is_refund is True
        assert event.order_id == 'o3'
        assert event.refund['id'] == 'rf-1'

    def test_missing_event_id_uses_body_hash(self):
        raw = json.dumps({'data': {'data': {'entityId': 'o1'}, 'instanceId': 'inst-1'}})
        first = parse_event(json.loads(raw), raw)
        second = parse_event(json.loads(raw), raw)
        assert first.event_id.startswith('sha256:')
        assert first.event_id == second.event_id


class TestSignature:

    def test_verification_requires_key(self):
        with pytest.raises(UnauthorizedError):
            decode_webhook_body('a.b.c', None, verify=True)

    def test_invalid_signature(self):
        token = jwt.encode({'data': '{}'}, 'not-the-app-key-' * 4, algorithm='HS256')
        with pytest.raises(UnauthorizedError):
            decode_webhook_body(token, 'some-public-key', verify=True)

    def test_unverified_jwt_is_decoded(self):
        token = jwt.encode({'data': '{"instanceId": "inst-1"}'}, 'unverified-secret-' * 4, algorithm='HS256')
        claims = decode_webhook_body(token, None, verify=False)
        assert json.loads(claims['data'])['instanceId'] == 'inst-1'

    def test_garbage_body(self):
        with pytest.raises(BusinessLogicError):
            decode_webhook_body('not json', None, verify=False)
        with pytest.raises(BusinessLogicError):
            decode_webhook_body('', None, verify=False)


class TestWebhookEndpoint:

    def test_ping(self, client):
        response = client.get(WEBHOOK_URL)
        assert response.status_code == 200
        assert response.get_json()['status'] == 'ok'

    def test_order_created_issues_sale(self, client, session, tenant1, settings1, fake_wix):
        tenant_id = tenant1.id
        body = order_created(tenant1.instance_id, 'evt-1', make_order('o1'))

        response = client.post(WEBHOOK_URL, data=body, content_type='application/json')
        assert response.status_code == 200
        data = response.get_json()
        assert data['status'] == 'processed'
        assert data['action'] == 'issue_sale'
        assert data['receipt_id'] == 1
        assert data['event_id'] == 'evt-1'

        receipt = session.query(Receipt).filter_by(tenant_id=tenant_id, order_id='o1').one()
        assert receipt.payload['source'] == 'webhook'

        log = session.query(WebhookLog).filter_by(event_id='evt-1').one()
        assert log.status == 'processed'
        assert log.tenant_id == tenant_id

    def test_duplicate_event_is_not_reprocessed(self, client, session, tenant1, settings1, fake_wix):
        tenant_id = tenant1.id
        body = order_created(tenant1.instance_id, 'evt-1', make_order('o1'))

        client.post(WEBHOOK_URL, data=body, content_type='application/json')
        response = client.post(WEBHOOK_URL, data=body, content_type='application/json')

        assert response.status_code == 200
        assert response.get_json()['status'] == 'duplicate'
        assert session.query(Receipt).filter_by(tenant_id=tenant_id).count() == 1
        assert session.query(WebhookLog).count() == 1

    def test_unknown_tenant_is_acknowledged(self, client, session, fake_wix):
        body = order_created('unknown-instance', 'evt-9', make_order('o1'))

        response = client.post(WEBHOOK_URL, data=body, content_type='application/json')
        assert response.status_code == 200
        assert response.get_json() == {'status': 'ignored', 'event_id': 'evt-9', 'reason': 'unknown_tenant'}
        assert session.query(Receipt).count() == 0

    def test_invalid_body_is_rejected(self, client, session):
        response = client.post(WEBHOOK_URL, data='garbage', content_type='text/plain')
        assert response.status_code == 400

    def test_refund_before_sale_is_queued_then_processed(self, client, session, tenant1, settings1, fake_wix):
        tenant_id = tenant1.id
        instance_id = tenant1.instance_id

        refund = order_refunded(instance_id, 'evt-r1', 'o9', {'id': 'rf-1', 'amount': {'amount': '40.00'}})
        response = client.post(WEBHOOK_URL, data=refund, content_type='application/json')
        assert response.get_json()['status'] == 'queued'

        pending = session.query(PendingRefund).filter_by(tenant_id=tenant_id).one()
        assert pending.order_id == 'o9'
        assert pending.refund_key == 'rf-1'
        assert pending.status == 'pending'

        # The cron finds no sale yet
        response = client.post('/cron/process-refunds', json={'tenant_id': tenant_id}, headers=CRON_HEADERS)
        assert response.get_json()['still_pending'] == 1

        sale = order_created(instance_id, 'evt-s1', make_order('o9'))
        client.post(WEBHOOK_URL, data=sale, content_type='application/json')

        response = client.post('/cron/process-refunds', json={'tenant_id': tenant_id}, headers=CRON_HEADERS)
        assert response.get_json() == {'status': 'ok', 'processed': 1, 'still_pending': 0, 'failed': 0}

        refund_receipt = session.query(Receipt).filter_by(tenant_id=tenant_id, type='refund').one()
        assert refund_receipt.id == 2
        assert refund_receipt.reference_receipt_id == 1
        assert str(refund_receipt.refund_amount) == '40.00'
        assert refund_receipt.refund_key == 'rf-1'

        pending = session.query(PendingRefund).filter_by(tenant_id=tenant_id).one()
        assert pending.status == 'processed'
        assert pending.attempts == 2

    def test_refund_after_sale_is_issued_directly(self, client, session, tenant1, settings1, fake_wix):
        tenant_id = tenant1.id
        instance_id = tenant1.instance_id

        client.post(WEBHOOK_URL, data=order_created(instance_id, 'evt-1', make_order('o1')),
                    content_type='application/json')
        refund = order_refunded(instance_id, 'evt-2', 'o1', {'id': 'rf-1', 'amount': {'amount': '30.00'}})
        response = client.post(WEBHOOK_URL, data=refund, content_type='application/json')

        data = response.get_json()
        assert data['status'] == 'processed'
        assert data['receipt_id'] == 2
        assert session.query(PendingRefund).count() == 0

    def test_partial_refund_without_id_leaves_remainder_refundable(self, client, session, tenant1, settings1, fake_wix):
        tenant_id = tenant1.id
        instance_id = tenant1.instance_id

        client.post(WEBHOOK_URL, data=order_created(instance_id, 'evt-1', make_order('o1')),
                    content_type='application/json')
        refund = order_refunded(instance_id, 'evt-2', 'o1', {'amount': {'amount': '30.00'}})
        assert client.post(WEBHOOK_URL, data=refund, content_type='application/json').get_json()['receipt_id'] == 2

        updated = webhook_body(instance_id, 'evt-3',
                               {'entityId': 'o1', 'updatedEvent': {'currentEntity': make_order('o1', payment_status='REFUNDED')}},
                               event_type='wix.ecom.v1.order_updated')
        data = client.post(WEBHOOK_URL, data=updated, content_type='application/json').get_json()
        assert data['action'] == 'issue_refund'
        assert data['created'] is True
        assert data['receipt_id'] == 3

        refunds = session.query(Receipt).filter_by(tenant_id=tenant_id, type='refund').order_by(Receipt.id).all()
        assert [r.refund_key for r in refunds] == ['event:evt-2', 'full']
        assert [str(r.refund_amount) for r in refunds] == ['30.00', '70.00']
        assert sum(r.refund_amount for r in refunds) == 100

    def test_refund_without_amount_or_id_is_full(self, client, session, tenant1, settings1, fake_wix):
        tenant_id = tenant1.id
        instance_id = tenant1.instance_id

        client.post(WEBHOOK_URL, data=order_created(instance_id, 'evt-1', make_order('o1')),
                    content_type='application/json')
        client.post(WEBHOOK_URL, data=order_refunded(instance_id, 'evt-2', 'o1', {'reason': 'damaged'}),
                    content_type='application/json')

        refund_receipt = session.query(Receipt).filter_by(tenant_id=tenant_id, type='refund').one()
        assert refund_receipt.refund_key == 'full'
        assert str(refund_receipt.refund_amount) == '100.00'

    def test_queued_refund_gives_up_after_max_attempts(self, client, session, tenant1, fake_wix):
        tenant_id = tenant1.id
        refund = order_refunded(tenant1.instance_id, 'evt-r1', 'o5', {'id': 'rf-1'})
        client.post(WEBHOOK_URL, data=refund, content_type='application/json')

        stats = None
        for _ in range(3):
            stats = client.post('/cron/process-refunds', json={'tenant_id': tenant_id},
                                headers=CRON_HEADERS).get_json()
        assert stats['failed'] == 1

        pending = session.query(PendingRefund).filter_by(tenant_id=tenant_id).one()
        assert pending.status == 'failed'
        assert pending.attempts == 3
        assert 'No sale receipt' in pending.last_error
