"""Health check blueprint."""
from flask import Blueprint, jsonify, current_app
from sqlalchemy import text

from fiscal_sync.database import get_session

health_bp = Blueprint('health', __name__)


@health_bp.route('/health')
def health():
    """Liveness plus a database round trip."""
    try:
        get_session().execute(text('SELECT 1'))
        database = 'ok'
    except Exception as e:
        current_app.logger.error(f"[HEALTH] Database check failed: {e}")
        database = 'error'

    status_code = 200 if database == 'ok' else 503
    return jsonify({'status': 'ok' if status_code == 200 else 'degraded', 'database': database}), status_code
