"""
Webhooks Blueprint for Wix order notifications.
Handles order created / payment status / refund events.
"""

import logging
from flask import Blueprint, request, jsonify, current_app
from fiscal_sync.database import get_session
from fiscal_sync.exceptions import FiscalSyncError
from fiscal_sync.services.webhook_service import handle_webhook
from fiscal_sync.services.wix_client import get_wix_client

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint('webhooks', __name__, url_prefix='/webhooks')


def should_verify_signature() -> bool:
    """Signature checks are skipped only in debug/testing when no app key is configured."""
    if current_app.config.get('WIX_APP_PUBLIC_KEY'):
        return True
    if current_app.debug or current_app.testing:
        logger.info("Skipping Wix webhook signature verification (dev mode, no public key)")
        return False
    return True


@webhooks_bp.route('/wix/orders', methods=['POST'])
def wix_orders_webhook():
    """
    Handle Wix order webhooks.

    Expected events:
    - wix.ecom.v1.order_created
    - wix.ecom.v1.order_payment_status_updated
    - wix.ecom.v1.order_canceled
    - refund events (queued when the sale receipt does not exist yet)
    """
    session = get_session()
    body = request.get_data(as_text=True)

    try:
        result = handle_webhook(
            session,
            get_wix_client(),
            body,
            public_key=current_app.config.get('WIX_APP_PUBLIC_KEY'),
            verify=should_verify_signature()
        )
    except FiscalSyncError as e:
        if e.status_code >= 500:
            logger.error(f"Wix webhook failed: {e.message}")
        else:
            logger.warning(f"Wix webhook rejected [{e.status_code}]: {e.message}")
        return jsonify(e.to_dict()), e.status_code
    except Exception as e:
        logger.exception(f"Error processing Wix webhook: {e}")
        session.rollback()
        return jsonify({'status': 'error', 'message': 'Internal server error'}), 500

    return jsonify(result), 200


@webhooks_bp.route('/wix/orders', methods=['GET'])
def wix_orders_webhook_ping():
    """Test endpoint to verify webhook is accessible."""
    return jsonify({'status': 'ok', 'message': 'Webhook endpoint is active'}), 200
