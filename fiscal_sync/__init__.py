"""Flask application factory."""
from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException
from fiscal_sync.database import init_db
import os


def create_app(config_object='config.Config'):
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    # Initialize Sentry for error tracking in production
    if os.getenv('SENTRY_DSN') and (app.config.get('ENV') == 'production' or os.getenv('FLASK_ENV') == 'production'):
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration

        sentry_sdk.init(
            dsn=os.getenv('SENTRY_DSN'),
            integrations=[FlaskIntegration()],
            traces_sample_rate=0.1,  # 10% of transactions for performance monitoring
            environment=os.getenv('FLASK_ENV', 'production'),
            release=os.getenv('GIT_COMMIT', 'unknown')
        )

    # Initialize Redis Cache (batch payment lookups)
    from fiscal_sync.services.cache_service import init_cache
    cache = init_cache(app)

    # Setup Prometheus metrics instrumentation
    from fiscal_sync.blueprints.metrics import setup_metrics_instrumentation
    setup_metrics_instrumentation(app)

    # Production: Enable ProxyFix behind the reverse proxy
    if app.config.get('ENV') == 'production':
        from werkzeug.middleware.proxy_fix import ProxyFix
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1, x_prefix=0)

    # Initialize database
    init_db(app)

    # One Wix client (and token cache) per process
    from fiscal_sync.services.wix_client import init_wix_client
    init_wix_client(app, cache)

    # Error Handlers
    from fiscal_sync.exceptions import FiscalSyncError

    @app.errorhandler(FiscalSyncError)
    def handle_fiscal_sync_error(error):
        """Handle custom application exceptions."""
        if error.status_code >= 500:
            app.logger.error(f"FiscalSyncError [{error.status_code}]: {error.message}")
        else:
            app.logger.warning(f"FiscalSyncError [{error.status_code}]: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        return jsonify({'status': 'error', 'message': error.description}), error.code

    @app.errorhandler(Exception)
    def internal_error(error):
        app.logger.exception(f"Unhandled Exception on {request.method} {request.path}: {error}")
        return jsonify({'status': 'error', 'message': 'Internal Server Error'}), 500

    # Register blueprints
    from fiscal_sync.blueprints.health import health_bp
    from fiscal_sync.blueprints.metrics import metrics_bp
    from fiscal_sync.blueprints.webhooks import webhooks_bp
    from fiscal_sync.blueprints.sync import sync_bp
    from fiscal_sync.blueprints.receipts import receipts_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(metrics_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(sync_bp)
    app.register_blueprint(receipts_bp)

    # Register CLI commands
    from fiscal_sync.cli_commands import init_cli_commands
    init_cli_commands(app)

    app.logger.info(f"WIX_API_BASE={app.config.get('WIX_API_BASE')}")
    app.logger.info(f"CACHE_ENABLED={app.config.get('CACHE_ENABLED')}")

    return app
