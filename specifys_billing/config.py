import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

DEV_ENV_NAMES = {'development', 'dev', 'local', 'test'}
BILLING_MODES = {'test', 'live'}
PROJECT_ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DEFAULT_PRODUCTS_CONFIG_PATH = os.path.join(PROJECT_ROOT_DIR, 'config', 'lemon-products.json')


def _env_str(environ, name, default=''):
    return str(environ.get(name, default) or default).strip()


def _env_float(environ, name, default):
    raw = _env_str(environ, name, str(default))
    try:
        return float(raw)
    except ValueError:
        return default


def _env_set(environ, name, lowercase=False):
    values = set()
    for item in _env_str(environ, name).split(','):
        item = item.strip()
        if item:
            values.add(item.lower() if lowercase else item)
    return frozenset(values)


@dataclass(frozen=True)
class AppConfig:
    """Central config object; every billing module receives it explicitly."""

    flask_secret_key: str = ''
    log_level: str = 'INFO'
    environment: str = 'development'
    sentry_dsn: str = ''
    sentry_release: str = 'specifys-billing'
    sentry_traces_sample_rate: float = 0.0
    lemon_api_key: str = ''
    lemon_store_id: str = ''
    lemon_variant_id: str = ''
    lemon_webhook_secret: str = ''
    lemon_mode: str = 'test'
    lemon_api_timeout: float = 15.0
    frontend_url: str = 'https://specifys-ai.com'
    products_config_path: str = DEFAULT_PRODUCTS_CONFIG_PATH
    firebase_credentials_path: str = 'firebase-credentials.json'
    firebase_credentials_json: str = ''
    admin_emails: frozenset = field(default_factory=frozenset)
    admin_uids: frozenset = field(default_factory=frozenset)

    @property
    def is_test_mode(self) -> bool:
        return self.lemon_mode == 'test'

    @property
    def is_dev_like(self) -> bool:
        return self.environment in DEV_ENV_NAMES


def resolve_runtime_env(environ) -> str:
    return (
        environ.get('SENTRY_ENVIRONMENT')
        or environ.get('FLASK_ENV')
        or environ.get('ENV')
        or ('production' if environ.get('RENDER') else 'development')
    ).strip().lower()


def load_config(environ=None) -> AppConfig:
    if environ is None:
        load_dotenv()
        environ = os.environ
    config = AppConfig(
        flask_secret_key=_env_str(environ, 'FLASK_SECRET_KEY'),
        log_level=_env_str(environ, 'LOG_LEVEL', 'INFO').upper(),
        environment=resolve_runtime_env(environ),
        sentry_dsn=_env_str(environ, 'SENTRY_DSN'),
        sentry_release=_env_str(environ, 'SENTRY_RELEASE', 'specifys-billing'),
        sentry_traces_sample_rate=_env_float(environ, 'SENTRY_TRACES_SAMPLE_RATE', 0.0),
        lemon_api_key=_env_str(environ, 'LEMON_SQUEEZY_API_KEY'),
        lemon_store_id=_env_str(environ, 'LEMON_SQUEEZY_STORE_ID'),
        lemon_variant_id=_env_str(environ, 'LEMON_SQUEEZY_VARIANT_ID'),
        lemon_webhook_secret=_env_str(environ, 'LEMON_WEBHOOK_SECRET'),
        lemon_mode=_env_str(environ, 'LEMON_MODE', 'test').lower(),
        lemon_api_timeout=_env_float(environ, 'LEMON_API_TIMEOUT_SECONDS', 15.0),
        frontend_url=_env_str(environ, 'FRONTEND_URL', 'https://specifys-ai.com').rstrip('/'),
        products_config_path=_env_str(environ, 'LEMON_PRODUCTS_CONFIG', DEFAULT_PRODUCTS_CONFIG_PATH),
        firebase_credentials_path=_env_str(environ, 'FIREBASE_CREDENTIALS_PATH', 'firebase-credentials.json'),
        firebase_credentials_json=_env_str(environ, 'FIREBASE_CREDENTIALS'),
        admin_emails=_env_set(environ, 'ADMIN_EMAILS', lowercase=True),
        admin_uids=_env_set(environ, 'ADMIN_UIDS'),
    )
    if config.lemon_mode not in BILLING_MODES:
        raise RuntimeError(f"LEMON_MODE must be one of {sorted(BILLING_MODES)}, got '{config.lemon_mode}'.")
    if not config.is_dev_like and not config.flask_secret_key:
        raise RuntimeError('FLASK_SECRET_KEY must be set in non-development environments.')
    return config
