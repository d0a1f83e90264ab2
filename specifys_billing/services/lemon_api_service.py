"""Business logic handlers for Lemon Squeezy APIs."""

import json

import sentry_sdk

from specifys_billing.errors import LemonApiError
from specifys_billing.repositories import purchases_repo
from specifys_billing.services.lemon_webhook_service import handle_webhook_event, verify_webhook_signature

CHECKOUT_SUCCESS_PATH = '/pages/profile.html?checkout=success'


def create_checkout(app_ctx, request):
    decoded_token = app_ctx.verify_firebase_token(request)
    if not decoded_token:
        return app_ctx.jsonify({'error': 'Please sign in to continue'}), 401
    unavailable = app_ctx.billing_unavailable()
    if unavailable:
        return unavailable

    uid = decoded_token['uid']
    email = decoded_token.get('email', '')
    data = request.get_json(silent=True) or {}
    product_key = str(data.get('product_key') or data.get('productKey') or '').strip()

    if product_key:
        product = app_ctx.products.get_product(product_key)
        if not product or not product.get('variant_id'):
            return app_ctx.jsonify({'error': 'Invalid product selected'}), 400
        variant_id = product['variant_id']
    else:
        variant_id = app_ctx.config.lemon_variant_id
    if not app_ctx.config.lemon_store_id or not variant_id:
        return app_ctx.jsonify({
            'error': 'Lemon Squeezy configuration missing',
            'missing': {'storeId': not app_ctx.config.lemon_store_id, 'variantId': not variant_id},
            'requestId': app_ctx.request_id,
        }), 500

    custom = {'user_id': uid}
    if product_key:
        custom['product_key'] = product_key
    success_url = f"{app_ctx.config.frontend_url}{CHECKOUT_SUCCESS_PATH}"
    try:
        checkout_id, checkout_url, _ = app_ctx.lemon_client.create_checkout(
            app_ctx.config.lemon_store_id,
            variant_id,
            email=email,
            custom=custom,
            test_mode=app_ctx.config.is_test_mode,
            redirect_url=success_url,
        )
    except LemonApiError as e:
        app_ctx.logger.error(f"[{app_ctx.request_id}] Lemon checkout error for {uid}: status={e.status} body={e.body}")
        status = e.status if 400 <= e.status < 600 else 502
        return app_ctx.jsonify({
            'error': 'Failed to create checkout',
            'details': e.body,
            'requestId': app_ctx.request_id,
        }), status

    if not checkout_url:
        app_ctx.logger.error(f"[{app_ctx.request_id}] Lemon checkout {checkout_id} returned no URL")
        return app_ctx.jsonify({'error': 'Checkout URL missing from provider response', 'requestId': app_ctx.request_id}), 502
    return app_ctx.jsonify({'success': True, 'checkoutUrl': checkout_url, 'checkoutId': checkout_id})


def cancel_subscription(app_ctx, request):
    decoded_token = app_ctx.verify_firebase_token(request)
    if not decoded_token:
        return app_ctx.jsonify({'error': 'Unauthorized'}), 401
    unavailable = app_ctx.database_unavailable() or app_ctx.billing_unavailable()
    if unavailable:
        return unavailable

    uid = decoded_token['uid']
    resolver = app_ctx.build_resolver()
    result, attempts = resolver.resolve(uid, email=decoded_token.get('email', ''), request_id=app_ctx.request_id)
    if result is None:
        return app_ctx.jsonify({
            'error': 'No active subscription found',
            'attempts': attempts,
            'requestId': app_ctx.request_id,
        }), 404

    try:
        body = app_ctx.lemon_client.cancel_subscription(result.subscription_id)
    except LemonApiError as e:
        app_ctx.logger.error(
            f"[{app_ctx.request_id}] Lemon cancel error for subscription {result.subscription_id}: status={e.status}"
        )
        return app_ctx.jsonify({
            'error': 'Failed to cancel subscription',
            'details': e.body,
            'attempts': attempts,
            'requestId': app_ctx.request_id,
        }), 502

    record = (body or {}).get('data') or {'id': result.subscription_id, 'attributes': result.attributes}
    update = resolver.upsert_subscription_from_webhook(uid, record, source='cancel_api') or result.update
    update_attributes = record.get('attributes') or {}
    return app_ctx.jsonify({
        'success': True,
        'subscriptionId': result.subscription_id,
        'status': update.get('status'),
        'cancelAtPeriodEnd': bool(update_attributes.get('cancelled', update.get('cancel_at_period_end'))),
        'endsAt': update.get('ends_at'),
        'source': result.source,
        'attempts': attempts,
    })


def webhook(app_ctx, request):
    payload = request.get_data()
    signature = request.headers.get('X-Signature', '')
    secret = app_ctx.config.lemon_webhook_secret

    if not signature or not secret:
        app_ctx.logger.warning('Lemon webhook rejected: missing signature or LEMON_WEBHOOK_SECRET')
        return app_ctx.jsonify({'error': 'Unauthorized'}), 401
    if not verify_webhook_signature(payload, signature, secret):
        app_ctx.logger.warning('Lemon webhook rejected: invalid signature')
        return app_ctx.jsonify({'error': 'Invalid signature'}), 401

    try:
        event = json.loads(payload.decode('utf-8'))
    except ValueError as e:
        app_ctx.logger.warning(f"Lemon webhook: invalid JSON body: {e}")
        return app_ctx.jsonify({'received': True, 'handled': False}), 200
    if app_ctx.db is None:
        app_ctx.logger.error('Lemon webhook received while Firestore is unavailable')
        return app_ctx.jsonify({'received': True, 'handled': False}), 200

    try:
        result = handle_webhook_event(app_ctx, event)
    except Exception as e:
        app_ctx.logger.error(f"[{app_ctx.request_id}] Lemon webhook processing error: {e}")
        sentry_sdk.capture_exception(e)
        return app_ctx.jsonify({'received': True, 'handled': False}), 200
    return app_ctx.jsonify({'received': True, 'handled': bool(result.get('handled'))}), 200


def purchase_counter(app_ctx, request):
    unavailable = app_ctx.database_unavailable()
    if unavailable:
        return unavailable
    try:
        count = purchases_repo.count_by_mode(app_ctx.db, app_ctx.config.is_test_mode)
    except Exception as e:
        app_ctx.logger.error(f"Purchase counter error: {e}")
        return app_ctx.jsonify({'error': 'Failed to get counter', 'requestId': app_ctx.request_id}), 500
    return app_ctx.jsonify({'success': True, 'count': count, 'mode': app_ctx.config.lemon_mode})


def list_products(app_ctx, request):
    return app_ctx.jsonify({'products': app_ctx.products.public_products(), 'mode': app_ctx.config.lemon_mode})
