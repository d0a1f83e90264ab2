import json
import os

import firebase_admin
import sentry_sdk
from firebase_admin import auth, credentials, firestore
from flask import current_app, g, jsonify
from sentry_sdk.integrations.flask import FlaskIntegration

from .logging_config import logger as default_logger
from .services import auth_service, credits_service
from .services.lemon_client import LemonSqueezyClient
from .services.lemon_products import ProductCatalog
from .services.subscription_resolver import SubscriptionResolver

EXTENSION_KEY = 'specifys_billing'


class BillingContext:
    """Runtime services handed to every API service function.

    Holds the injected Firestore client and module, the Lemon Squeezy client
    and the product catalog so handlers never reach for globals.
    """

    def __init__(self, config, db=None, firestore_module=None, auth_module=None, lemon_client=None,
                 products=None, logger=None, firebase_init_error=''):
        self.config = config
        self.db = db
        self.firestore_module = firestore_module
        self.auth_module = auth_module
        self.lemon_client = lemon_client
        self.products = products or ProductCatalog(config.products_config_path, logger=logger)
        self.logger = logger or default_logger
        self.firebase_init_error = firebase_init_error
        self.jsonify = jsonify

    @property
    def request_id(self):
        return str(getattr(g, 'request_id', '') or '')

    def database_unavailable(self):
        if self.db is not None:
            return None
        return self.jsonify({
            'error': 'Database unavailable',
            'message': 'Billing storage is not configured.',
            'requestId': self.request_id,
        }), 503

    def billing_unavailable(self):
        if self.lemon_client is not None:
            return None
        return self.jsonify({
            'error': 'Lemon Squeezy configuration missing',
            'message': 'Configure LEMON_SQUEEZY_API_KEY and LEMON_SQUEEZY_STORE_ID.',
            'requestId': self.request_id,
        }), 500

    def verify_firebase_token(self, request):
        return auth_service.verify_firebase_token(request, auth_module=self.auth_module, logger=self.logger)

    def is_admin_user(self, decoded_token):
        return auth_service.is_admin_user(decoded_token, self.config.admin_uids, self.config.admin_emails)

    def grant_credits(self, user_id, amount, source, metadata=None):
        return credits_service.grant_credits(
            user_id, amount, source, metadata,
            db=self.db, firestore_module=self.firestore_module, logger=self.logger,
        )

    def consume_credit(self, user_id, spec_id):
        return credits_service.consume_credit(
            user_id, spec_id, db=self.db, firestore_module=self.firestore_module, logger=self.logger,
        )

    def refund_credit(self, user_id, amount, reason, original_transaction_id=None):
        return credits_service.refund_credit(
            user_id, amount, reason, original_transaction_id,
            db=self.db, firestore_module=self.firestore_module, logger=self.logger,
        )

    def enable_pro_subscription(self, user_id, metadata=None):
        return credits_service.enable_pro_subscription(
            user_id, metadata, db=self.db, firestore_module=self.firestore_module, logger=self.logger,
        )

    def disable_pro_subscription(self, user_id, restore_credits=None):
        return credits_service.disable_pro_subscription(
            user_id, restore_credits, db=self.db, firestore_module=self.firestore_module, logger=self.logger,
        )

    def build_resolver(self):
        return SubscriptionResolver(
            self.db,
            self.lemon_client,
            self.firestore_module,
            store_id=self.config.lemon_store_id,
            mode=self.config.lemon_mode,
            logger=self.logger,
        )


def _init_firebase(config):
    if os.path.exists(config.firebase_credentials_path):
        cred = credentials.Certificate(config.firebase_credentials_path)
    elif config.firebase_credentials_json:
        cred = credentials.Certificate(json.loads(config.firebase_credentials_json))
    else:
        raise ValueError('FIREBASE_CREDENTIALS is not set and the credentials file was not found.')
    if not firebase_admin._apps:
        firebase_admin.initialize_app(cred)
    return firestore.client()


def _init_sentry(config):
    if not config.sentry_dsn:
        return False
    sentry_sdk.init(
        dsn=config.sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=min(max(config.sentry_traces_sample_rate, 0.0), 1.0),
        send_default_pii=False,
        environment=config.environment,
        release=config.sentry_release,
    )
    return True


def init_extensions(app, config, db=None, firestore_module=None, auth_module=None, lemon_client=None,
                    products=None, logger=None):
    """Build the ``BillingContext`` and attach it to ``app.extensions``.

    Anything passed explicitly wins over the production wiring, which is how
    tests swap in fakes without touching Firebase or the network.
    """
    logger = logger or default_logger
    firebase_init_error = ''
    if db is None:
        try:
            db = _init_firebase(config)
        except Exception as exc:
            firebase_init_error = str(exc)
            logger.info(f"Firebase initialization skipped: {firebase_init_error}")
    if firestore_module is None:
        firestore_module = firestore
    if auth_module is None and db is not None:
        auth_module = auth
    if lemon_client is None and config.lemon_api_key:
        lemon_client = LemonSqueezyClient(config.lemon_api_key, timeout=config.lemon_api_timeout)
    if products is None:
        products = ProductCatalog(config.products_config_path, logger=logger)

    app.extensions['sentry_enabled'] = _init_sentry(config)
    ctx = BillingContext(
        config,
        db=db,
        firestore_module=firestore_module,
        auth_module=auth_module,
        lemon_client=lemon_client,
        products=products,
        logger=logger,
        firebase_init_error=firebase_init_error,
    )
    app.extensions[EXTENSION_KEY] = ctx
    return ctx


def get_context():
    return current_app.extensions[EXTENSION_KEY]
