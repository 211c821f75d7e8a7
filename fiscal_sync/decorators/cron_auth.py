"""
Cron / operator authentication.

Operator and scheduler endpoints are called by machines, not users, and
authenticate with a shared secret: `Authorization: Bearer <CRON_SECRET>`.
"""
import hmac
import logging
from functools import wraps

from flask import current_app, g, request

from fiscal_sync.exceptions import UnauthorizedError

logger = logging.getLogger(__name__)


def _bearer_token():
    header = request.headers.get('Authorization', '')
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer':
        return None
    return token.strip() or None


def require_cron_secret(f):
    """
    Decorator: Require the cron secret as a bearer token.

    Raises UnauthorizedError (403) when the token does not match or no
    secret is configured; the app error handler turns it into JSON.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        secret = current_app.config.get('CRON_SECRET')
        if not secret:
            logger.error("CRON_SECRET is not configured; rejecting operator request")
            raise UnauthorizedError("Operator endpoints are disabled")

        token = _bearer_token()
        if not token or not hmac.compare_digest(token, secret):
            logger.warning(f"Rejected operator request to {request.path} from {request.remote_addr}")
            raise UnauthorizedError("Invalid cron secret")

        g.operator = request.headers.get('X-Operator') or 'cron'
        return f(*args, **kwargs)

    return decorated_function
