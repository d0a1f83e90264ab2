import pytest

from fakes import FakeDB, FakeFirestoreModule, FakeLemonClient, subscription_record
from specifys_billing.services.subscription_resolver import (
    SubscriptionResolver,
    build_subscription_update,
    has_active_status,
    has_cancelled_status,
)


def _resolver(db, client, store_id='42'):
    return SubscriptionResolver(db, client, FakeFirestoreModule, store_id=store_id, mode='test')


def test_status_classes():
    assert has_active_status(' Active ')
    assert has_active_status('past_due')
    assert not has_active_status('expired')
    assert has_cancelled_status('unpaid')
    assert not has_cancelled_status(None)


def test_build_subscription_update_merges_metadata_and_keeps_existing_values():
    record = {
        'id': 55,
        'attributes': {'status': 'on_trial', 'customer_id': 9, 'cancelled': True},
        'relationships': {'order': {'data': {'id': '9001'}}},
    }
    existing = {'variant_id': '333', 'metadata': {'note': 'keep'}}

    update = build_subscription_update(record, existing)

    assert update['lemon_subscription_id'] == '55'
    assert update['status'] == 'on_trial'
    assert update['variant_id'] == '333'
    assert update['cancel_at_period_end'] is True
    assert update['lemon_customer_id'] == '9'
    assert update['last_order_id'] == '9001'
    assert update['metadata'] == {'note': 'keep', 'lemonCustomerId': '9', 'lastOrderId': '9001'}


def test_build_subscription_update_requires_id():
    assert build_subscription_update({'attributes': {}}) is None


def test_stored_subscription_resolves_on_first_strategy_only():
    db = FakeDB()
    db.seed('subscriptions', 'u1', {'lemon_subscription_id': 's-1'})
    client = FakeLemonClient(subscriptions={'s-1': subscription_record('s-1')})

    result, attempts = _resolver(db, client).resolve('u1', email='u1@example.com')

    assert result.subscription_id == 's-1'
    assert result.source == 'subscription_doc'
    assert attempts == [{'type': 'subscription_doc', 'success': True, 'subscriptionId': 's-1'}]
    assert client.calls == [('get_subscription', 's-1')]
    stored = db.doc('subscriptions', 'u1')
    assert stored['last_synced_source'] == 'subscription_doc'
    assert stored['last_synced_mode'] == 'test'


def test_purchase_reference_resolves_and_backfills_for_next_call():
    db = FakeDB()
    db.seed('purchases', 'o-1', {'userId': 'u1', 'createdAt': 1.0})
    db.seed('purchases', 'o-2', {'userId': 'u1', 'createdAt': 2.0, 'metadata': {'subscription_id': 's-9'}})
    client = FakeLemonClient(subscriptions={'s-9': subscription_record('s-9')})
    resolver = _resolver(db, client)

    result, attempts = resolver.resolve('u1')

    assert result.subscription_id == 's-9'
    assert result.source == 'purchases'
    assert [a['type'] for a in attempts] == ['subscription_doc', 'purchases']
    assert attempts[0]['success'] is False
    assert db.doc('subscriptions', 'u1')['lemon_subscription_id'] == 's-9'

    second, second_attempts = resolver.resolve('u1')
    assert second.source == 'subscription_doc'
    assert len(second_attempts) == 1


def test_unverifiable_purchase_references_are_logged():
    db = FakeDB()
    db.seed('purchases', 'o-1', {'userId': 'u1', 'createdAt': 1.0, 'subscriptionId': 's-gone'})
    db.seed('purchases', 'o-2', {'userId': 'u1', 'createdAt': 2.0, 'metadata': {'subscription_id': 's-9'}})
    client = FakeLemonClient(subscriptions={'s-9': subscription_record('s-9', store_id='77')})

    result, attempts = _resolver(db, client).resolve('u1')

    assert result is None
    purchase_attempts = [a for a in attempts if a['type'] == 'purchases']
    assert purchase_attempts == [
        {'type': 'purchases', 'success': False, 'reason': 'lookup_failed', 'subscriptionId': 's-9', 'orderId': 'o-2'},
        {'type': 'purchases', 'success': False, 'reason': 'lookup_failed', 'subscriptionId': 's-gone', 'orderId': 'o-1'},
    ]


def test_purchases_without_references_log_once():
    db = FakeDB()
    db.seed('purchases', 'o-1', {'userId': 'u1', 'createdAt': 1.0})

    _, attempts = _resolver(db, FakeLemonClient()).resolve('u1')

    assert attempts[1] == {'type': 'purchases', 'success': False, 'reason': 'no_subscription_id'}


def test_subscription_from_another_store_is_rejected():
    db = FakeDB()
    db.seed('subscriptions', 'u1', {'lemon_subscription_id': 's-1'})
    client = FakeLemonClient(subscriptions={'s-1': subscription_record('s-1', store_id='77')})

    result, attempts = _resolver(db, client).resolve('u1')

    assert result is None
    assert attempts[0] == {'type': 'subscription_doc', 'success': False, 'reason': 'lookup_failed', 'subscriptionId': 's-1'}


def test_last_order_doc_strategy():
    db = FakeDB()
    db.seed('subscriptions', 'u1', {'last_order_id': 'o-5'})
    db.seed('purchases', 'o-5', {'userId': 'someone-else', 'subscriptionId': 's-5'})
    client = FakeLemonClient(subscriptions={'s-5': subscription_record('s-5')})

    result, attempts = _resolver(db, client).resolve('u1')

    assert result.source == 'last_order_doc'
    assert attempts[-1]['type'] == 'last_order_doc'
    assert attempts[1] == {'type': 'purchases', 'success': False, 'reason': 'no_records'}


def test_list_api_by_order_prefers_active_record():
    db = FakeDB()
    db.seed('subscriptions', 'u1', {'metadata': {'lastOrderId': 'o-8'}})
    listing = [subscription_record('s-old', status='expired'), subscription_record('s-new', status='active')]
    client = FakeLemonClient(listings={(('order_id', 'o-8'),): listing})

    result, attempts = _resolver(db, client).resolve('u1')

    assert result.subscription_id == 's-new'
    assert result.source == 'subscriptions_api_order'


def test_list_api_by_email_then_customer_id():
    db = FakeDB()
    db.seed('subscriptions', 'u1', {'metadata': {'lemonCustomerId': 'c-77'}})
    client = FakeLemonClient(listings={(('customer_id', 'c-77'),): [subscription_record('s-77')]})

    result, attempts = _resolver(db, client).resolve('u1', email='u1@example.com')

    assert result.source == 'subscriptions_api_customer_id'
    types = [a['type'] for a in attempts]
    assert types.index('subscriptions_api_customer_email') < types.index('subscriptions_api_customer_id')
    assert ('list_subscriptions', (('customer_email', 'u1@example.com'),)) in client.calls


def test_orders_api_discovers_subscription_reference():
    db = FakeDB()
    db.seed('subscriptions', 'u1', {'last_order_id': 'o-3'})
    client = FakeLemonClient(
        subscriptions={'s-3': subscription_record('s-3')},
        orders={'o-3': {'id': 'o-3', 'attributes': {}, 'relationships': {'subscriptions': {'data': [{'id': 's-3'}]}}}},
    )

    result, attempts = _resolver(db, client).resolve('u1')

    assert result.source == 'orders_api'
    assert {'type': 'orders_api_lookup', 'success': True, 'subscriptionId': 's-3'} in attempts
    assert db.doc('subscriptions', 'u1')['last_synced_source'] == 'orders_api'


def test_nothing_found_returns_full_attempt_log():
    db = FakeDB()

    result, attempts = _resolver(db, FakeLemonClient()).resolve('u1')

    assert result is None
    assert [a['type'] for a in attempts] == [
        'subscription_doc',
        'purchases',
        'last_order_doc',
        'subscriptions_api_order',
        'subscriptions_api_customer',
        'orders_api',
    ]
    assert all(a['success'] is False for a in attempts)
    assert db.doc('subscriptions', 'u1') is None


def test_strategy_exception_is_recorded_and_chain_continues():
    db = FakeDB()
    db.seed('subscriptions', 'u1', {'metadata': {'lemonCustomerId': 'c-1'}})
    client = FakeLemonClient(listings={(('customer_id', 'c-1'),): [subscription_record('s-1')]})
    resolver = _resolver(db, client)

    def _boom(_run):
        raise RuntimeError('firestore down')

    resolver.strategies[1] = ('purchases', _boom)

    result, attempts = resolver.resolve('u1')

    assert result.subscription_id == 's-1'
    assert {'type': 'purchases', 'success': False, 'reason': 'error', 'error': 'firestore down'} in attempts


def test_upsert_from_webhook_marks_source():
    db = FakeDB()
    db.seed('subscriptions', 'u1', {'metadata': {'lastOrderId': 'o-1'}})

    update = _resolver(db, FakeLemonClient()).upsert_subscription_from_webhook(
        'u1', subscription_record('s-2', status='cancelled', order_id=None),
    )

    assert update['last_synced_source'] == 'webhook'
    stored = db.doc('subscriptions', 'u1')
    assert stored['status'] == 'cancelled'
    assert stored['metadata']['lastOrderId'] == 'o-1'


def test_upsert_records_caller_source():
    db = FakeDB()

    update = _resolver(db, FakeLemonClient()).upsert_subscription_from_webhook(
        'u1', subscription_record('s-2', status='cancelled'), source='cancel_api',
    )

    assert update['last_synced_source'] == 'cancel_api'
    assert db.doc('subscriptions', 'u1')['last_synced_source'] == 'cancel_api'


@pytest.mark.parametrize('record', [None, {}, {'attributes': {'status': 'active'}}])
def test_upsert_from_webhook_ignores_records_without_id(record):
    db = FakeDB()
    assert _resolver(db, FakeLemonClient()).upsert_subscription_from_webhook('u1', record) is None
    assert db.doc('subscriptions', 'u1') is None
