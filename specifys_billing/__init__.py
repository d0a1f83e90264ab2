import uuid

import sentry_sdk
from flask import Flask, g, request

from .config import load_config
from .errors import register_error_handlers
from .extensions import init_extensions
from .logging_config import configure_logging


def _register_request_hooks(app):
    @app.before_request
    def attach_request_context():
        request_id = str(request.headers.get('X-Request-ID', '') or '').strip()[:120] or uuid.uuid4().hex
        g.request_id = request_id
        if not app.extensions.get('sentry_enabled'):
            return
        sentry_sdk.set_tag('request.id', request_id)
        sentry_sdk.set_tag('route.path', request.path)
        sentry_sdk.set_tag('route.method', request.method)
        sentry_sdk.set_tag('route.endpoint', request.endpoint or '')
        sentry_sdk.set_tag('route.auth_header_present', 'true' if request.headers.get('Authorization') else 'false')

    @app.after_request
    def attach_response_context(response):
        request_id = str(getattr(g, 'request_id', '') or '').strip()
        if request_id:
            response.headers['X-Request-ID'] = request_id
        if app.extensions.get('sentry_enabled'):
            sentry_sdk.set_tag('route.status_code', str(response.status_code))
        return response


def create_app(config=None, **overrides):
    """App factory entrypoint.

    ``overrides`` are forwarded to ``init_extensions`` (``db``,
    ``firestore_module``, ``auth_module``, ``lemon_client``, ``products``).
    """
    config = config or load_config()
    configure_logging(config.log_level)

    app = Flask(__name__)
    app.config['SECRET_KEY'] = config.flask_secret_key or 'dev-only-secret'
    app.config['BILLING_CONFIG'] = config

    init_extensions(app, config, **overrides)
    _register_request_hooks(app)
    register_error_handlers(app)

    from .blueprints import credits_bp, health_bp, lemon_bp, specs_bp

    app.register_blueprint(lemon_bp)
    app.register_blueprint(specs_bp)
    app.register_blueprint(credits_bp)
    app.register_blueprint(health_bp)
    return app
