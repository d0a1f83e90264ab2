"""Business logic handlers for spec credit APIs.

Ledger errors (``ValidationError``, ``InsufficientCreditsError``,
``SpecLimitReachedError``) propagate to the app-level error handlers.
"""

from specifys_billing.services import credits_service


def consume_credit(app_ctx, request):
    decoded_token = app_ctx.verify_firebase_token(request)
    if not decoded_token:
        return app_ctx.jsonify({'error': 'Unauthorized'}), 401
    unavailable = app_ctx.database_unavailable()
    if unavailable:
        return unavailable

    data = request.get_json(silent=True) or {}
    spec_id = str(data.get('specId') or data.get('spec_id') or '').strip()
    if not spec_id:
        return app_ctx.jsonify({'error': 'specId is required', 'requestId': app_ctx.request_id}), 400

    result = app_ctx.consume_credit(decoded_token['uid'], spec_id)
    return app_ctx.jsonify(result)


def get_entitlements(app_ctx, request):
    decoded_token = app_ctx.verify_firebase_token(request)
    if not decoded_token:
        return app_ctx.jsonify({'error': 'Unauthorized'}), 401
    unavailable = app_ctx.database_unavailable()
    if unavailable:
        return unavailable

    uid = decoded_token['uid']
    data = credits_service.get_entitlements(uid, db=app_ctx.db)
    access = credits_service.check_access(uid, db=app_ctx.db, logger=app_ctx.logger)
    user = data['user'] or {}
    return app_ctx.jsonify({
        'success': True,
        'entitlements': data['entitlements'],
        'user': {
            'plan': user.get('plan', 'free'),
            'free_specs_remaining': int(user.get('free_specs_remaining', 0) or 0),
        },
        'hasAccess': access['hasAccess'],
        'paywallData': access['paywallData'],
    })
