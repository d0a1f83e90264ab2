"""Lemon Squeezy product catalog loaded from a JSON file with a reload interval."""

import json
import threading
import time

from specifys_billing.logging_config import logger as default_logger

RELOAD_INTERVAL_SECONDS = 60.0
PRODUCT_TYPES = ('one_time', 'subscription')


class ProductCatalog:
    """Cached view of ``lemon-products.json``.

    The file is re-read at most once per ``reload_interval`` seconds as measured
    by ``clock``. A missing or malformed file yields an empty catalog instead of
    an exception so checkout and webhook handling keep answering.
    """

    def __init__(self, path, clock=time.monotonic, reload_interval=RELOAD_INTERVAL_SECONDS, logger=None):
        self.path = path
        self.clock = clock
        self.reload_interval = float(reload_interval)
        self.logger = logger or default_logger
        self._lock = threading.Lock()
        self._config = None
        self._loaded_at = 0.0

    def load(self, force=False):
        with self._lock:
            now = self.clock()
            if not force and self._config is not None and (now - self._loaded_at) < self.reload_interval:
                return self._config
            try:
                with open(self.path, 'r', encoding='utf-8') as handle:
                    config = json.load(handle)
                if not isinstance(config, dict):
                    raise ValueError('product config root must be an object')
            except (OSError, ValueError) as exc:
                self.logger.error(f"Failed to load Lemon products configuration from {self.path}: {exc}")
                config = {'products': {}}
            self._config = config
            self._loaded_at = now
            return self._config

    def get_products(self):
        products = self.load().get('products') or {}
        return products if isinstance(products, dict) else {}

    def get_product(self, product_key):
        if not product_key:
            return None
        return self.get_products().get(product_key)

    def get_product_key_by_variant_id(self, variant_id):
        if variant_id in (None, ''):
            return None
        wanted = str(variant_id)
        for key, product in self.get_products().items():
            if str((product or {}).get('variant_id', '')) == wanted:
                return key
        return None

    def get_product_by_variant_id(self, variant_id):
        key = self.get_product_key_by_variant_id(variant_id)
        return self.get_product(key) if key else None

    def public_products(self):
        """Catalog subset safe to expose to the browser."""
        items = {}
        for key, product in self.get_products().items():
            product = product or {}
            grants = product.get('grants') or {}
            items[key] = {
                'name': product.get('name', key),
                'product_type': product_type(product),
                'price_usd': product.get('price_usd'),
                'spec_credits': int(grants.get('spec_credits', 0) or 0),
                'unlimited': bool(grants.get('unlimited')),
            }
        return items


def product_type(product):
    product = product or {}
    declared = str(product.get('product_type', '') or '').strip().lower()
    if declared in PRODUCT_TYPES:
        return declared
    return 'subscription' if (product.get('grants') or {}).get('unlimited') else 'one_time'
