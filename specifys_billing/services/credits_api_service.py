"""Business logic handlers for credits ledger APIs (grant, refund, history)."""

from specifys_billing.repositories import transactions_repo
from specifys_billing.services import credits_service


def _target_user(app_ctx, decoded_token, requested_uid):
    """Own uid, or ``requested_uid`` when the caller is an admin. ``None`` means forbidden."""
    uid = decoded_token['uid']
    requested_uid = str(requested_uid or '').strip()
    if not requested_uid or requested_uid == uid:
        return uid
    if app_ctx.is_admin_user(decoded_token):
        return requested_uid
    return None


def grant_credits(app_ctx, request):
    decoded_token = app_ctx.verify_firebase_token(request)
    if not decoded_token:
        return app_ctx.jsonify({'error': 'Unauthorized'}), 401
    if not app_ctx.is_admin_user(decoded_token):
        return app_ctx.jsonify({'error': 'Forbidden'}), 403
    unavailable = app_ctx.database_unavailable()
    if unavailable:
        return unavailable

    data = request.get_json(silent=True) or {}
    metadata = dict(data.get('metadata') or {})
    metadata.setdefault('grantedBy', decoded_token['uid'])
    if data.get('orderId'):
        metadata['orderId'] = str(data['orderId'])
    result = app_ctx.grant_credits(
        str(data.get('userId') or '').strip(),
        data.get('amount'),
        str(data.get('source') or 'admin'),
        metadata,
    )
    return app_ctx.jsonify(result)


def refund_credit(app_ctx, request):
    decoded_token = app_ctx.verify_firebase_token(request)
    if not decoded_token:
        return app_ctx.jsonify({'error': 'Unauthorized'}), 401
    unavailable = app_ctx.database_unavailable()
    if unavailable:
        return unavailable

    data = request.get_json(silent=True) or {}
    target_uid = _target_user(app_ctx, decoded_token, data.get('userId'))
    if target_uid is None:
        return app_ctx.jsonify({'error': 'Forbidden'}), 403
    original_transaction_id = str(data.get('originalTransactionId') or data.get('transactionId') or '').strip() or None
    amount = data.get('amount', 1)
    if not app_ctx.is_admin_user(decoded_token):
        # self-service refunds only return the paid credit of one of the caller's own consumes
        if not _is_refundable_consume(app_ctx, target_uid, original_transaction_id):
            return app_ctx.jsonify({'error': 'Refund not allowed for this transaction'}), 403
        amount = 1
    result = app_ctx.refund_credit(target_uid, amount, data.get('reason'), original_transaction_id)
    return app_ctx.jsonify(result)


def _is_refundable_consume(app_ctx, uid, transaction_id):
    if not transaction_id:
        return False
    snapshot = transactions_repo.get_doc(app_ctx.db, transaction_id)
    if not snapshot.exists:
        return False
    record = snapshot.to_dict() or {}
    return (
        record.get('userId') == uid
        and record.get('type') == 'consume'
        and (record.get('metadata') or {}).get('creditType') == 'paid'
    )


def list_transactions(app_ctx, request):
    decoded_token = app_ctx.verify_firebase_token(request)
    if not decoded_token:
        return app_ctx.jsonify({'error': 'Unauthorized'}), 401
    unavailable = app_ctx.database_unavailable()
    if unavailable:
        return unavailable

    target_uid = _target_user(app_ctx, decoded_token, request.args.get('userId'))
    if target_uid is None:
        return app_ctx.jsonify({'error': 'Forbidden'}), 403
    try:
        result = credits_service.list_transactions(
            target_uid,
            request.args.get('limit', 50),
            db=app_ctx.db,
            firestore_module=app_ctx.firestore_module,
        )
    except Exception as e:
        app_ctx.logger.error(f"Error fetching credit transactions for {target_uid}: {e}")
        return app_ctx.jsonify({'error': 'Failed to fetch transactions', 'requestId': app_ctx.request_id}), 500
    return app_ctx.jsonify({'success': True, **result})


def get_entitlements(app_ctx, request):
    decoded_token = app_ctx.verify_firebase_token(request)
    if not decoded_token:
        return app_ctx.jsonify({'error': 'Unauthorized'}), 401
    unavailable = app_ctx.database_unavailable()
    if unavailable:
        return unavailable

    target_uid = _target_user(app_ctx, decoded_token, request.args.get('userId'))
    if target_uid is None:
        return app_ctx.jsonify({'error': 'Forbidden'}), 403
    access = credits_service.check_access(target_uid, db=app_ctx.db, logger=app_ctx.logger)
    return app_ctx.jsonify({'success': True, 'userId': target_uid, **access})
