"""Lemon Squeezy webhook verification, parsing and dispatch."""

import hashlib
import hmac
import logging
import re
import time

from specifys_billing.logging_config import log_event
from specifys_billing.repositories import purchases_repo, subscriptions_repo, users_repo
from specifys_billing.services.credits_service import MAX_CREDITS_PER_OPERATION
from specifys_billing.services.lemon_products import product_type
from specifys_billing.services.subscription_resolver import has_active_status, has_cancelled_status, normalize_status

HEX_SIGNATURE_RE = re.compile(r'^[0-9a-fA-F]{64}$')
DISABLING_STATUSES = frozenset({'expired', 'unpaid'})
SUBSCRIPTION_STATE_EVENTS = frozenset({
    'subscription_created',
    'subscription_updated',
    'subscription_resumed',
    'subscription_paused',
    'subscription_unpaused',
    'subscription_cancelled',
    'subscription_expired',
})


def verify_webhook_signature(payload, signature, secret):
    """HMAC-SHA256 of the raw body against ``sha256=<hex>`` or bare ``<hex>``."""
    if not payload or not signature or not secret:
        return False
    if isinstance(payload, str):
        payload = payload.encode('utf-8')
    received = str(signature).strip()
    if '=' in received:
        scheme, _, received = received.partition('=')
        if scheme.strip().lower() != 'sha256':
            return False
    if not HEX_SIGNATURE_RE.match(received):
        return False
    expected = hmac.new(str(secret).encode('utf-8'), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode('ascii'), received.lower().encode('ascii'))


def _custom_data(event, attributes):
    for candidate in (
        (event.get('meta') or {}).get('custom_data'),
        attributes.get('custom'),
        (attributes.get('checkout_data') or {}).get('custom'),
    ):
        if isinstance(candidate, dict) and candidate:
            return dict(candidate)
    return {}


def _custom_value(custom, snake_key, camel_key):
    value = custom.get(snake_key) or custom.get(camel_key)
    return str(value) if value not in (None, '') else None


def _parse_total(attributes):
    total = attributes.get('total')
    if isinstance(total, bool):
        total = None
    if isinstance(total, (int, float)):
        return total
    if isinstance(total, str):
        try:
            return float(total) if '.' in total else int(total)
        except ValueError:
            pass
    formatted = attributes.get('total_formatted')
    if isinstance(formatted, str):
        numeric = re.sub(r'[^0-9.]', '', formatted)
        try:
            return int(round(float(numeric) * 100))
        except ValueError:
            return None
    return None


def _first_order_item(attributes):
    item = attributes.get('first_order_item')
    if isinstance(item, dict) and item:
        return item
    items = attributes.get('order_items')
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return {}


def _str_or_none(value):
    return str(value) if value not in (None, '') else None


def _event_test_mode(event, attributes):
    test_mode = (event.get('meta') or {}).get('test_mode')
    if test_mode is None:
        test_mode = attributes.get('test_mode', False)
    return bool(test_mode)


def _parse_order(event, data, attributes):
    custom = _custom_data(event, attributes)
    item = _first_order_item(attributes)
    item_custom = item.get('custom') or (item.get('product_options') or {}).get('custom') or {}
    if not _custom_value(custom, 'user_id', 'userId') and isinstance(item_custom, dict) and item_custom:
        custom = dict(item_custom)

    total = _parse_total(attributes)
    quantity = item.get('quantity') or 1
    if total is None and isinstance(item.get('price'), (int, float)):
        total = item['price'] * quantity

    return {
        'order_id': _str_or_none(data.get('id')),
        'order_number': attributes.get('order_number') or attributes.get('identifier'),
        'user_id': _custom_value(custom, 'user_id', 'userId'),
        'product_key': _custom_value(custom, 'product_key', 'productKey'),
        'email': attributes.get('user_email') or attributes.get('customer_email') or attributes.get('email'),
        'customer_id': _str_or_none(attributes.get('customer_id')),
        'variant_id': _str_or_none(item.get('variant_id') or attributes.get('variant_id')),
        'product_id': _str_or_none(item.get('product_id') or attributes.get('product_id')),
        'product_name': item.get('product_name') or item.get('name'),
        'quantity': int(quantity),
        'total': total,
        'currency': attributes.get('currency') or 'USD',
        'test_mode': _event_test_mode(event, attributes),
        'status': attributes.get('status'),
        'subscription_id': _str_or_none(attributes.get('subscription_id')),
        'custom_data': custom,
    }


def _parse_subscription(event, data, attributes):
    custom = _custom_data(event, attributes)
    cancel_at_period_end = attributes.get('cancel_at_period_end')
    if cancel_at_period_end is None:
        cancel_at_period_end = attributes.get('cancelled', False)
    return {
        'subscription_id': _str_or_none(data.get('id')),
        'status': normalize_status(attributes.get('status')),
        'cancel_at_period_end': bool(cancel_at_period_end),
        'ends_at': attributes.get('ends_at'),
        'renews_at': attributes.get('renews_at'),
        'product_id': _str_or_none(attributes.get('product_id')),
        'variant_id': _str_or_none(attributes.get('variant_id')),
        'store_id': _str_or_none(attributes.get('store_id')),
        'customer_id': _str_or_none(attributes.get('customer_id')),
        'order_id': _str_or_none(attributes.get('order_id')),
        'email': attributes.get('user_email'),
        'user_id': _custom_value(custom, 'user_id', 'userId'),
        'test_mode': _event_test_mode(event, attributes),
        'custom_data': custom,
        'record': data,
    }


def parse_webhook_payload(event):
    """Normalise a webhook body into ``{event_name, order|subscription}``.

    Returns ``None`` for bodies without ``meta.event_name`` or ``data.attributes``.
    """
    if not isinstance(event, dict):
        return None
    event_name = (event.get('meta') or {}).get('event_name')
    data = event.get('data')
    if not event_name or not isinstance(data, dict) or not isinstance(data.get('attributes'), dict):
        return None
    attributes = data['attributes']
    if event_name.startswith('order_'):
        return {'event_name': event_name, 'order': _parse_order(event, data, attributes)}
    if event_name.startswith('subscription_'):
        return {'event_name': event_name, 'subscription': _parse_subscription(event, data, attributes)}
    return {'event_name': event_name}


def _record_purchase(ctx, order, user_id, product_key, product):
    product = product or {}
    grants = product.get('grants') or {}
    existing = purchases_repo.get_doc(ctx.db, order['order_id'])
    now_ts = time.time()
    purchase = {
        'orderId': order['order_id'],
        'orderNumber': order['order_number'],
        'userId': user_id,
        'email': order['email'],
        'variantId': order['variant_id'],
        'productId': order['product_id'],
        'productKey': product_key,
        'productName': product.get('name') or order['product_name'],
        'productType': product_type(product) if product else None,
        'credits': int(grants.get('spec_credits', 0) or 0) if product else None,
        'quantity': order['quantity'],
        'total': order['total'],
        'currency': order['currency'],
        'testMode': order['test_mode'],
        'subscriptionId': order['subscription_id'],
        'subscriptionStatus': order['status'] if order['subscription_id'] else None,
        'status': 'paid',
        'metadata': {'customData': order['custom_data'], 'lemonCustomerId': order['customer_id']},
        'updatedAt': now_ts,
    }
    if not existing.exists or not (existing.to_dict() or {}).get('createdAt'):
        purchase['createdAt'] = now_ts
    purchases_repo.set_doc(ctx.db, order['order_id'], purchase, merge=True)
    return purchase


def _remember_customer(ctx, user_id, customer_id):
    if not customer_id:
        return
    users_repo.set_doc(ctx.db, user_id, {
        'lemon_customer_id': customer_id,
        'last_entitlement_sync_at': time.time(),
    }, merge=True)


def _mode_mismatch(ctx, kind, object_id, test_mode):
    if test_mode == ctx.config.is_test_mode:
        return False
    ctx.logger.info(
        f"Ignoring {kind} {object_id}: test_mode={test_mode} while billing mode is {ctx.config.lemon_mode}"
    )
    return True


def _subscription_inactive(ctx, user_id, subscription_id):
    """True when the stored subscription for this order has already lapsed."""
    stored = subscriptions_repo.get_data(ctx.db, user_id)
    if not stored or not has_cancelled_status(stored.get('status')):
        return False
    stored_id = stored.get('lemon_subscription_id')
    return not subscription_id or not stored_id or str(stored_id) == str(subscription_id)


def _handle_order_created(ctx, order):
    if not order['order_id']:
        return {'handled': False, 'reason': 'missing_order_id'}
    if _mode_mismatch(ctx, 'order', order['order_id'], order['test_mode']):
        return {'handled': False, 'reason': 'mode_mismatch'}

    user_id = order['user_id'] or users_repo.find_uid_by_lemon_customer_or_email(
        ctx.db, order['customer_id'], order['email'],
    )
    product_key = order['product_key'] or ctx.products.get_product_key_by_variant_id(order['variant_id'])
    product = ctx.products.get_product(product_key)
    _record_purchase(ctx, order, user_id, product_key, product)

    if not user_id:
        log_event(logging.WARNING, 'webhook_order_without_user', ctx.logger,
                  order_id=order['order_id'], email=order['email'])
        return {'handled': False, 'reason': 'user_not_found', 'orderId': order['order_id']}
    _remember_customer(ctx, user_id, order['customer_id'])

    if not product:
        log_event(logging.WARNING, 'webhook_order_unknown_product', ctx.logger,
                  order_id=order['order_id'], variant_id=order['variant_id'], product_key=product_key)
        return {'handled': False, 'reason': 'unknown_product', 'orderId': order['order_id']}

    grants = product.get('grants') or {}
    result = {'handled': True, 'orderId': order['order_id'], 'userId': user_id, 'productKey': product_key}
    if grants.get('unlimited'):
        if _subscription_inactive(ctx, user_id, order['subscription_id']):
            log_event(logging.WARNING, 'webhook_order_for_lapsed_subscription', ctx.logger,
                      order_id=order['order_id'], user_id=user_id, subscription_id=order['subscription_id'])
            result['unlimited'] = False
        else:
            ctx.enable_pro_subscription(user_id, {
                'orderId': order['order_id'],
                'variantId': order['variant_id'],
                'subscriptionId': order['subscription_id'],
                'productKey': product_key,
            })
            result['unlimited'] = True
    credits = int(grants.get('spec_credits', 0) or 0) * max(1, order['quantity'])
    if credits > MAX_CREDITS_PER_OPERATION:
        purchases_repo.update_doc(ctx.db, order['order_id'], {
            'status': 'grant_failed',
            'grantError': f"credits {credits} exceed per-operation limit {MAX_CREDITS_PER_OPERATION}",
            'updatedAt': time.time(),
        })
        log_event(logging.ERROR, 'webhook_order_grant_failed', ctx.logger,
                  order_id=order['order_id'], user_id=user_id, credits=credits)
        return {'handled': False, 'reason': 'grant_limit_exceeded', 'orderId': order['order_id'], 'userId': user_id}
    if credits > 0:
        grant = ctx.grant_credits(user_id, credits, 'lemon_squeezy', {
            'orderId': order['order_id'],
            'variantId': order['variant_id'],
            'productKey': product_key,
        })
        result['creditsGranted'] = 0 if grant.get('alreadyProcessed') else credits
        result['alreadyProcessed'] = bool(grant.get('alreadyProcessed'))
    return result


def _handle_order_refunded(ctx, order):
    if not order['order_id']:
        return {'handled': False, 'reason': 'missing_order_id'}
    snapshot = purchases_repo.get_doc(ctx.db, order['order_id'])
    if not snapshot.exists:
        return {'handled': False, 'reason': 'purchase_not_found', 'orderId': order['order_id']}
    purchases_repo.update_doc(ctx.db, order['order_id'], {
        'status': 'refunded',
        'refundedAt': time.time(),
        'updatedAt': time.time(),
    })
    log_event(logging.INFO, 'purchase_refunded', ctx.logger,
              order_id=order['order_id'], user_id=(snapshot.to_dict() or {}).get('userId'))
    return {'handled': True, 'orderId': order['order_id']}


def _subscription_user_id(ctx, subscription):
    return (
        subscription['user_id']
        or subscriptions_repo.find_user_id_by_subscription_id(ctx.db, subscription['subscription_id'])
        or users_repo.find_uid_by_lemon_customer_or_email(ctx.db, subscription['customer_id'], subscription['email'])
    )


def _handle_subscription_event(ctx, event_name, subscription):
    if _mode_mismatch(ctx, 'subscription', subscription['subscription_id'], subscription['test_mode']):
        return {'handled': False, 'reason': 'mode_mismatch'}
    user_id = _subscription_user_id(ctx, subscription)
    if not user_id:
        log_event(logging.WARNING, 'webhook_subscription_without_user', ctx.logger,
                  event_name=event_name, subscription_id=subscription['subscription_id'])
        return {'handled': False, 'reason': 'user_not_found'}

    resolver = ctx.build_resolver()
    update = resolver.upsert_subscription_from_webhook(user_id, subscription['record'])
    if update is None:
        return {'handled': False, 'reason': 'invalid_subscription_record'}
    _remember_customer(ctx, user_id, subscription['customer_id'])

    status = subscription['status']
    result = {'handled': True, 'userId': user_id, 'subscriptionId': update['lemon_subscription_id'], 'status': status}
    if event_name == 'subscription_expired' or status in DISABLING_STATUSES:
        ctx.disable_pro_subscription(user_id)
        result['unlimited'] = False
    elif event_name == 'subscription_cancelled':
        # access continues until Lemon sends subscription_expired
        result['unlimited'] = True
    elif has_active_status(status):
        ctx.enable_pro_subscription(user_id, {
            'subscriptionId': update['lemon_subscription_id'],
            'variantId': subscription['variant_id'],
            'renewsAt': subscription['renews_at'],
        })
        result['unlimited'] = True
    return result


def handle_webhook_event(ctx, event):
    """Apply one verified webhook body. Returns a dict with at least ``handled``."""
    parsed = parse_webhook_payload(event)
    if parsed is None:
        return {'handled': False, 'reason': 'invalid_payload'}
    event_name = parsed['event_name']
    if event_name == 'order_created':
        result = _handle_order_created(ctx, parsed['order'])
    elif event_name == 'order_refunded':
        result = _handle_order_refunded(ctx, parsed['order'])
    elif event_name in SUBSCRIPTION_STATE_EVENTS:
        result = _handle_subscription_event(ctx, event_name, parsed['subscription'])
    else:
        result = {'handled': False, 'reason': 'ignored_event'}
    log_event(logging.INFO, 'webhook_processed', ctx.logger, event_name=event_name, **result)
    result['event'] = event_name
    return result
