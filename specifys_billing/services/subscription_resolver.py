"""Locate a user's Lemon Squeezy subscription through an ordered set of lookups.

Each strategy either returns a verified subscription record or appends a
failed attempt and yields to the next one. The first record found is written
back to ``subscriptions/{user_id}`` so later calls resolve from the stored ID.
"""

import logging
import time
from dataclasses import dataclass, field

from specifys_billing.errors import LemonApiError
from specifys_billing.logging_config import log_event, logger as default_logger
from specifys_billing.repositories import purchases_repo, subscriptions_repo

ACTIVE_STATUSES = frozenset({'active', 'on_trial', 'paused', 'past_due'})
CANCELLED_STATUSES = frozenset({'cancelled', 'expired', 'unpaid'})
PURCHASE_SCAN_LIMIT = 10


def normalize_status(status):
    return status.strip().lower() if isinstance(status, str) else ''


def has_active_status(status):
    return normalize_status(status) in ACTIVE_STATUSES


def has_cancelled_status(status):
    return normalize_status(status) in CANCELLED_STATUSES


def _dig(data, *path):
    for key in path:
        if isinstance(data, dict):
            data = data.get(key)
        elif isinstance(data, list) and isinstance(key, int) and len(data) > key:
            data = data[key]
        else:
            return None
    return data


def _first(*values):
    for value in values:
        if value not in (None, ''):
            return value
    return None


def _str_or_none(value):
    return str(value) if value not in (None, '') else None


def extract_last_order_id(subscription_data):
    data = subscription_data or {}
    return _str_or_none(_first(
        data.get('last_order_id'),
        data.get('lastOrderId'),
        data.get('order_id'),
        _dig(data, 'metadata', 'last_order_id'),
        _dig(data, 'metadata', 'lastOrderId'),
        _dig(data, 'metadata', 'order_id'),
    ))


def extract_purchase_subscription_id(purchase):
    purchase = purchase or {}
    return _str_or_none(_first(
        purchase.get('subscriptionId'),
        purchase.get('subscription_id'),
        _dig(purchase, 'metadata', 'subscription_id'),
        _dig(purchase, 'metadata', 'subscriptionId'),
        _dig(purchase, 'metadata', 'subscription', 'id'),
    ))


def _known_customer_ids(subscription_data):
    data = subscription_data or {}
    ids = []
    for value in (
        data.get('lemon_customer_id'),
        _dig(data, 'metadata', 'lemonCustomerId'),
        _dig(data, 'metadata', 'customer_id'),
        _dig(data, 'metadata', 'customerId'),
    ):
        value = _str_or_none(value)
        if value and value not in ids:
            ids.append(value)
    return ids


def build_subscription_update(record, existing=None):
    """Map a Lemon ``subscriptions`` resource onto the stored subscription document.

    Returns ``None`` for records without an ID. Missing remote values keep the
    existing document's values; metadata is merged, never replaced.
    """
    if not record or not record.get('id'):
        return None
    existing = existing or {}
    attributes = record.get('attributes') or {}
    relationships = record.get('relationships') or {}

    status = normalize_status(attributes.get('status'))
    order_id = _str_or_none(_first(
        attributes.get('order_id'),
        _dig(relationships, 'order', 'data', 'id'),
        _dig(relationships, 'orders', 'data', 0, 'id'),
        _dig(relationships, 'first_order', 'data', 'id'),
    ))
    variant_id = _str_or_none(_first(attributes.get('variant_id'), _dig(relationships, 'variant', 'data', 'id')))
    product_id = _str_or_none(_first(attributes.get('product_id'), _dig(relationships, 'product', 'data', 'id')))
    store_id = _str_or_none(_first(attributes.get('store_id'), _dig(relationships, 'store', 'data', 'id')))
    customer_id = _str_or_none(attributes.get('customer_id'))
    cancel_at_period_end = attributes.get('cancel_at_period_end')
    if cancel_at_period_end is None:
        cancel_at_period_end = attributes.get('cancelled', False)

    metadata = dict(existing.get('metadata') or {})
    if customer_id:
        metadata['lemonCustomerId'] = customer_id
    if order_id:
        metadata['lastOrderId'] = order_id

    update = {
        'lemon_subscription_id': str(record['id']),
        'status': status or existing.get('status'),
        'variant_id': variant_id or existing.get('variant_id'),
        'product_id': product_id or existing.get('product_id'),
        'store_id': store_id or existing.get('store_id'),
        'cancel_at_period_end': bool(cancel_at_period_end),
        'ends_at': _first(attributes.get('ends_at'), attributes.get('cancelled_at')),
        'renews_at': attributes.get('renews_at') or None,
        'last_synced_at': time.time(),
    }
    if customer_id:
        update['lemon_customer_id'] = customer_id
    if order_id:
        update['last_order_id'] = order_id
    if metadata:
        update['metadata'] = metadata
    return update


@dataclass
class ResolveResult:
    subscription_id: str
    source: str
    status: str
    attributes: dict
    relationships: dict
    update: dict
    attempts: list = field(default_factory=list)

    def to_dict(self):
        return {
            'subscriptionId': self.subscription_id,
            'source': self.source,
            'status': self.status,
            'attempts': list(self.attempts),
        }


@dataclass
class _ResolveRun:
    user_id: str
    email: str
    subscription_data: dict
    request_id: str
    attempts: list = field(default_factory=list)

    @property
    def last_order_id(self):
        return extract_last_order_id(self.subscription_data)

    def record(self, kind, success, **details):
        attempt = {'type': kind, 'success': bool(success)}
        attempt.update({key: value for key, value in details.items() if value is not None})
        self.attempts.append(attempt)


class SubscriptionResolver:
    def __init__(self, db, client, firestore_module, store_id=None, mode='test', logger=None):
        self.db = db
        self.client = client
        self.firestore_module = firestore_module
        self.store_id = _str_or_none(store_id)
        self.mode = mode
        self.logger = logger or default_logger
        self.strategies = [
            ('subscription_doc', self._from_subscription_doc),
            ('purchases', self._from_purchases),
            ('last_order_doc', self._from_last_order_doc),
            ('subscriptions_api_order', self._from_subscriptions_api_order),
            ('subscriptions_api_customer', self._from_subscriptions_api_customer),
            ('orders_api', self._from_orders_api),
        ]

    def resolve(self, user_id, email=None, request_id=None):
        """Return ``(ResolveResult or None, attempts)`` after trying each strategy in order."""
        run = _ResolveRun(
            user_id=user_id,
            email=(email or '').strip(),
            subscription_data=subscriptions_repo.get_data(self.db, user_id),
            request_id=request_id or '',
        )
        for name, strategy in self.strategies:
            try:
                result = strategy(run)
            except Exception as exc:
                self.logger.warning(f"[{run.request_id}] Subscription strategy {name} failed for {user_id}: {exc}")
                run.record(name, False, reason='error', error=str(exc))
                continue
            if result is not None:
                result.attempts = run.attempts
                log_event(
                    logging.INFO, 'subscription_resolved', self.logger,
                    request_id=run.request_id, user_id=user_id, source=result.source,
                    subscription_id=result.subscription_id, attempts=len(run.attempts),
                )
                return result, run.attempts
        log_event(
            logging.WARNING, 'subscription_not_found', self.logger,
            request_id=run.request_id, user_id=user_id, attempts=run.attempts,
        )
        return None, run.attempts

    def upsert_subscription_from_webhook(self, user_id, record, source='webhook'):
        existing = subscriptions_repo.get_data(self.db, user_id)
        update = build_subscription_update(record, existing)
        if update is None:
            self.logger.warning(f"Subscription record without ID ignored for {user_id} (source={source})")
            return None
        update['last_synced_source'] = source
        update['last_synced_mode'] = self.mode
        subscriptions_repo.set_doc(self.db, user_id, update, merge=True)
        log_event(
            logging.INFO, 'subscription_upserted', self.logger,
            user_id=user_id, subscription_id=update['lemon_subscription_id'], status=update['status'],
        )
        return update

    def _fetch_subscription(self, run, subscription_id):
        try:
            body = self.client.get_subscription(subscription_id)
        except LemonApiError as exc:
            self.logger.warning(
                f"[{run.request_id}] Lemon subscription lookup {subscription_id} failed with status {exc.status}"
            )
            return None
        record = (body or {}).get('data')
        if not record or not record.get('id'):
            return None
        store_id = _str_or_none(_first(
            _dig(record, 'attributes', 'store_id'),
            _dig(record, 'relationships', 'store', 'data', 'id'),
        ))
        if self.store_id and store_id and store_id != self.store_id:
            self.logger.warning(f"[{run.request_id}] Subscription {subscription_id} belongs to store {store_id}")
            return None
        return record

    def _list_subscriptions(self, filters):
        try:
            return self.client.list_subscriptions(store_id=self.store_id, status='active', filters=filters), None
        except LemonApiError as exc:
            return [], exc.status

    def _backfill(self, run, record, source):
        update = build_subscription_update(record, run.subscription_data)
        update['last_synced_source'] = source
        update['last_synced_mode'] = self.mode
        subscriptions_repo.set_doc(self.db, run.user_id, update, merge=True)
        run.record(source, True, subscriptionId=update['lemon_subscription_id'])
        return ResolveResult(
            subscription_id=update['lemon_subscription_id'],
            source=source,
            status=update['status'],
            attributes=record.get('attributes') or {},
            relationships=record.get('relationships') or {},
            update=update,
        )

    def _from_subscription_doc(self, run):
        subscription_id = _str_or_none(run.subscription_data.get('lemon_subscription_id'))
        if not subscription_id:
            run.record('subscription_doc', False, reason='no_subscription_id')
            return None
        record = self._fetch_subscription(run, subscription_id)
        if record is None:
            run.record('subscription_doc', False, reason='lookup_failed', subscriptionId=subscription_id)
            return None
        return self._backfill(run, record, 'subscription_doc')

    def _from_purchases(self, run):
        docs = purchases_repo.list_by_user_recent(self.db, run.user_id, PURCHASE_SCAN_LIMIT, self.firestore_module)
        if not docs:
            run.record('purchases', False, reason='no_records')
            return None
        tried = False
        for doc in docs:
            candidate = extract_purchase_subscription_id(doc.to_dict())
            if not candidate:
                continue
            tried = True
            record = self._fetch_subscription(run, candidate)
            if record is not None:
                return self._backfill(run, record, 'purchases')
            run.record('purchases', False, reason='lookup_failed', subscriptionId=candidate, orderId=doc.id)
        if not tried:
            run.record('purchases', False, reason='no_subscription_id')
        return None

    def _from_last_order_doc(self, run):
        order_id = run.last_order_id
        if not order_id:
            run.record('last_order_doc', False, reason='no_last_order_id')
            return None
        snapshot = purchases_repo.get_doc(self.db, order_id)
        if not snapshot.exists:
            run.record('last_order_doc', False, reason='order_doc_missing', orderId=order_id)
            return None
        candidate = extract_purchase_subscription_id(snapshot.to_dict())
        if not candidate:
            run.record('last_order_doc', False, reason='no_subscription_id', orderId=order_id)
            return None
        record = self._fetch_subscription(run, candidate)
        if record is None:
            run.record('last_order_doc', False, reason='lookup_failed', orderId=order_id)
            return None
        return self._backfill(run, record, 'last_order_doc')

    def _pick_record(self, records):
        for record in records:
            if has_active_status(_dig(record, 'attributes', 'status')):
                return record
        return records[0] if records else None

    def _from_subscriptions_api_order(self, run):
        order_id = run.last_order_id
        if not order_id:
            run.record('subscriptions_api_order', False, reason='no_last_order_id')
            return None
        records, error_status = self._list_subscriptions({'order_id': order_id})
        record = self._pick_record(records)
        if record is None:
            run.record('subscriptions_api_order', False, reason='error' if error_status is not None else 'no_records',
                       status=error_status)
            return None
        return self._backfill(run, record, 'subscriptions_api_order')

    def _from_subscriptions_api_customer(self, run):
        candidates = []
        if run.email:
            candidates.append(('customer_email', run.email))
        for customer_id in _known_customer_ids(run.subscription_data):
            candidates.append(('customer_id', customer_id))
        if not candidates:
            run.record('subscriptions_api_customer', False, reason='no_customer_reference')
            return None
        for filter_name, value in candidates:
            source = f"subscriptions_api_{filter_name}"
            records, error_status = self._list_subscriptions({filter_name: value})
            record = self._pick_record(records)
            if record is not None:
                return self._backfill(run, record, source)
            run.record(source, False, reason='error' if error_status is not None else 'no_records', status=error_status)
        return None

    def _from_orders_api(self, run):
        order_id = run.last_order_id
        if not order_id:
            run.record('orders_api', False, reason='no_last_order_id')
            return None
        try:
            body = self.client.get_order(order_id)
        except LemonApiError as exc:
            run.record('orders_api_lookup', False, reason='non_ok', status=exc.status)
            return None
        data = (body or {}).get('data') or {}
        subscription_id = _str_or_none(_first(
            _dig(data, 'attributes', 'subscription_id'),
            _dig(data, 'attributes', 'subscription', 'id'),
            _dig(data, 'relationships', 'subscription', 'data', 'id'),
            _dig(data, 'relationships', 'subscriptions', 'data', 0, 'id'),
        ))
        if not subscription_id:
            run.record('orders_api_lookup', False, reason='missing_subscription_reference', orderId=order_id)
            return None
        run.record('orders_api_lookup', True, subscriptionId=subscription_id)
        record = self._fetch_subscription(run, subscription_id)
        if record is None:
            run.record('orders_api', False, reason='lookup_failed', subscriptionId=subscription_id)
            return None
        return self._backfill(run, record, 'orders_api')
