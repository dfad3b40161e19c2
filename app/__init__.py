"""
Subscription webhook application factory.
Creates and configures the Flask application instance.
"""
import os
import json
import logging
import uuid
from datetime import datetime, timezone

import click
from flask import Flask, jsonify, request, g

from app.config import config
from app.extensions import init_extensions, db, pending_associations


def _init_sentry(app):
    """Initialize Sentry error tracking for production."""
    dsn = app.config.get('SENTRY_DSN') or os.environ.get('SENTRY_DSN')
    if not dsn:
        app.logger.info('SENTRY_DSN not set: error tracking disabled.')
        return

    try:
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration
        from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

        sentry_sdk.init(
            dsn=dsn,
            integrations=[FlaskIntegration(), SqlalchemyIntegration()],
            traces_sample_rate=float(os.environ.get('SENTRY_TRACES_RATE', '0.1')),
            environment=os.environ.get('FLASK_ENV', 'production'),
            send_default_pii=False,
        )
        app.logger.info('Sentry error tracking initialized.')
    except ImportError:
        app.logger.warning('sentry-sdk not installed: error tracking disabled.')


def create_app(config_name=None):
    """
    Application factory for creating Flask app instances.

    Args:
        config_name: Configuration to use (development, testing, production)

    Returns:
        Configured Flask application instance
    """
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'development')

    app = Flask(__name__)

    # Load configuration
    config_class = config[config_name]
    app.config.from_object(config_class)

    # Initialize Sentry (production only)
    if config_name == 'production':
        _init_sentry(app)

    # Call init_app if available (production validation happens here)
    if hasattr(config_class, 'init_app'):
        config_class.init_app(app)

    # Initialize extensions
    init_extensions(app)

    # Initialize Stripe API key
    if app.config.get('STRIPE_SECRET_KEY'):
        import stripe
        stripe.api_key = app.config['STRIPE_SECRET_KEY']

    # Register blueprints
    register_blueprints(app)

    # Register error handlers
    register_error_handlers(app)

    # Register CLI commands
    register_cli_commands(app)

    # Configure logging
    configure_logging(app)

    # Create database tables (development only)
    if config_name == 'development':
        with app.app_context():
            from app import models  # noqa: F401
            db.create_all()

    return app


def register_blueprints(app):
    """Register all application blueprints."""
    from app.blueprints.webhooks import webhooks_bp

    app.register_blueprint(webhooks_bp, url_prefix='/api/stripe')


def register_error_handlers(app):
    """Register JSON error handlers for common HTTP errors."""

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'error': {'code': 'not_found', 'message': 'Resource not found.'}}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({'error': {'code': 'method_not_allowed', 'message': 'Method not allowed.'}}), 405

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        request_id = g.get('request_id', '-')
        app.logger.error('500 Internal Server Error: %s (request_id=%s)', type(error).__name__, request_id, exc_info=True)
        return jsonify({'error': {'code': 'internal_error', 'message': 'Internal server error.', 'request_id': request_id}}), 500

    @app.errorhandler(429)
    def ratelimit_error(error):
        return jsonify({'error': {'code': 'rate_limit_exceeded', 'message': 'Too many requests. Try again later.'}}), 429


def register_cli_commands(app):
    """Register custom CLI commands."""

    @app.cli.command('init-db')
    def init_db():
        """Create the users, subscriptions and pending_associations tables."""
        from app import models  # noqa: F401

        db.create_all()
        click.echo('Database tables created.')

    @app.cli.command('prune-pending')
    def prune_pending():
        """Delete expired pending subscription associations."""
        if pending_associations.backend.prune_on_write:
            click.echo('Memory backend: only this process is pruned; the server prunes its own entries on write.')
        removed = pending_associations.prune()
        click.echo(f'Removed {removed} expired pending association(s).')


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production (cloud log aggregation)."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'message': record.getMessage(),
            'module': record.module,
            'line': record.lineno,
        }
        # Add request_id if available
        try:
            log_entry['request_id'] = g.get('request_id', '-')
        except RuntimeError:
            pass  # Outside request context
        if record.exc_info and record.exc_info[0]:
            log_entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False)


def configure_logging(app):
    """Configure application logging.

    Production: JSON to stdout.
    Development: plain text.
    """
    if app.testing:
        return

    @app.before_request
    def assign_request_id():
        g.request_id = request.headers.get('X-Request-ID', str(uuid.uuid4())[:8])

    @app.after_request
    def log_request(response):
        app.logger.info(
            '%s %s %s',
            request.method,
            request.path,
            response.status_code,
        )
        response.headers['X-Request-ID'] = g.get('request_id', '-')
        return response

    if not app.debug:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(JSONFormatter())
        stream_handler.setLevel(logging.INFO)

        # Clear existing handlers to avoid duplicates
        app.logger.handlers.clear()
        app.logger.addHandler(stream_handler)
        app.logger.setLevel(logging.INFO)
        app.logger.info('Subscription webhook startup (JSON logging)')
    else:
        app.logger.setLevel(logging.DEBUG)
        app.logger.info('Subscription webhook startup (development)')
