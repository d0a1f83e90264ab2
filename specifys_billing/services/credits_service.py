"""Spec credits ledger backed by Firestore transactions.

Every mutation runs inside one ``firestore.transactional`` call that first
reads the transaction document keyed by a deterministic ID and only then
touches the balance. Replaying the same operation finds that document and
returns ``alreadyProcessed`` without writing anything.
"""

import logging
import secrets
import time

from specifys_billing.errors import InsufficientCreditsError, SpecLimitReachedError, ValidationError
from specifys_billing.logging_config import log_event
from specifys_billing.repositories import entitlements_repo, specs_repo, transactions_repo, users_repo

MAX_CREDITS_PER_OPERATION = 1000
GRANT_SOURCES = ('admin', 'lemon_squeezy', 'manual', 'promotion', 'free_trial')
FREE_TRIAL_SPEC_LIMIT = 1
MAX_TRANSACTIONS_PAGE = 100


def generate_transaction_id(prefix, reference, user_id):
    if reference:
        return f"{prefix}_{reference}_{user_id}"
    return f"{prefix}_{int(time.time() * 1000)}_{user_id}_{secrets.token_hex(8)}"


def _require_user_id(user_id):
    if not user_id or not isinstance(user_id, str):
        raise ValidationError('Invalid userId')


def _require_amount(amount):
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError('Amount must be a positive integer')
    if amount > MAX_CREDITS_PER_OPERATION:
        raise ValidationError(f"Amount exceeds maximum allowed ({MAX_CREDITS_PER_OPERATION})")


def _as_int(value):
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


def _replayed(transaction_id, existing, amount_key):
    metadata = existing.get('metadata') or {}
    result = {
        'success': True,
        'alreadyProcessed': True,
        'transactionId': transaction_id,
        'remaining': metadata.get('remaining'),
    }
    if amount_key:
        result[amount_key] = existing.get('amount')
    if existing.get('type') == 'consume':
        result['creditType'] = metadata.get('creditType', 'unknown')
    return result


def _transaction_record(user_id, transaction_id, amount, kind, source, now_ts, spec_id=None, order_id=None, metadata=None):
    return {
        'userId': user_id,
        'amount': amount,
        'type': kind,
        'source': source,
        'specId': spec_id,
        'orderId': order_id,
        'transactionId': transaction_id,
        'metadata': metadata or {},
        'timestamp': now_ts,
        'createdAt': now_ts,
    }


def _add_credits(db, user_id, amount, transaction_id, kind, source, metadata, firestore_module, amount_key, order_id=None):
    """Shared grant/refund body: idempotent balance increment plus ledger record."""
    tx_ref = transactions_repo.doc_ref(db, transaction_id)
    entitlements_ref = entitlements_repo.doc_ref(db, user_id)

    @firestore_module.transactional
    def _add_in_transaction(transaction):
        existing = tx_ref.get(transaction=transaction)
        if existing.exists:
            return _replayed(transaction_id, existing.to_dict() or {}, amount_key)

        snapshot = entitlements_ref.get(transaction=transaction)
        current = _as_int((snapshot.to_dict() or {}).get('spec_credits')) if snapshot.exists else 0
        remaining = current + amount
        now_ts = time.time()

        if snapshot.exists:
            transaction.update(entitlements_ref, {
                'spec_credits': firestore_module.Increment(amount),
                'updated_at': now_ts,
            })
        else:
            entitlements = entitlements_repo.default_entitlements(user_id)
            entitlements.update({'spec_credits': amount, 'updated_at': now_ts})
            transaction.set(entitlements_ref, entitlements)

        record_metadata = dict(metadata)
        record_metadata.update({'previousCredits': current, 'remaining': remaining})
        transaction.set(tx_ref, _transaction_record(
            user_id, transaction_id, amount, kind, source, now_ts,
            order_id=order_id, metadata=record_metadata,
        ))
        return {
            'success': True,
            amount_key: amount,
            'previousCredits': current,
            'remaining': remaining,
            'transactionId': transaction_id,
        }

    return _add_in_transaction(db.transaction())


def grant_credits(user_id, amount, source, metadata=None, *, db, firestore_module, logger=None):
    """Grant ``amount`` credits. Keyed by ``{source}_{orderId}_{userId}`` when an order is known."""
    _require_user_id(user_id)
    _require_amount(amount)
    if source not in GRANT_SOURCES:
        raise ValidationError(f"Invalid source. Must be one of: {', '.join(GRANT_SOURCES)}")

    metadata = dict(metadata or {})
    order_id = metadata.get('orderId')
    transaction_id = str(metadata.get('transactionId') or generate_transaction_id(source, order_id, user_id))
    result = _add_credits(
        db, user_id, amount, transaction_id, 'grant', source, metadata, firestore_module,
        amount_key='creditsAdded', order_id=str(order_id) if order_id else None,
    )
    log_event(
        logging.INFO, 'credits_granted', logger,
        user_id=user_id, amount=amount, source=source, transaction_id=transaction_id,
        already_processed=bool(result.get('alreadyProcessed')), remaining=result.get('remaining'),
    )
    return result


def refund_credit(user_id, amount, reason, original_transaction_id=None, *, db, firestore_module, logger=None):
    _require_user_id(user_id)
    _require_amount(amount)
    if not reason or not isinstance(reason, str):
        raise ValidationError('reason is required and must be a string')

    transaction_id = generate_transaction_id('refund', original_transaction_id, user_id)
    metadata = {'reason': reason, 'originalTransactionId': original_transaction_id}
    result = _add_credits(
        db, user_id, amount, transaction_id, 'refund', 'system', metadata, firestore_module,
        amount_key='creditsRefunded',
    )
    log_event(
        logging.INFO, 'credits_refunded', logger,
        user_id=user_id, amount=amount, reason=reason, transaction_id=transaction_id,
        already_processed=bool(result.get('alreadyProcessed')),
    )
    return result


def consume_credit(user_id, spec_id, *, db, firestore_module, logger=None):
    """Spend one credit for ``spec_id``: unlimited, then paid credits, then the free allowance."""
    _require_user_id(user_id)
    if not spec_id or not isinstance(spec_id, str):
        raise ValidationError('Invalid specId')

    transaction_id = generate_transaction_id('consume', spec_id, user_id)
    tx_ref = transactions_repo.doc_ref(db, transaction_id)
    entitlements_ref = entitlements_repo.doc_ref(db, user_id)
    user_ref = users_repo.doc_ref(db, user_id)

    @firestore_module.transactional
    def _consume_in_transaction(transaction):
        existing = tx_ref.get(transaction=transaction)
        if existing.exists:
            return _replayed(transaction_id, existing.to_dict() or {}, None)

        entitlements = entitlements_repo.snapshot_to_entitlements(
            entitlements_ref.get(transaction=transaction), user_id,
        )
        now_ts = time.time()

        if entitlements.get('unlimited'):
            transaction.set(tx_ref, _transaction_record(
                user_id, transaction_id, -1, 'consume', 'unlimited', now_ts,
                spec_id=spec_id, metadata={'creditType': 'unlimited', 'remaining': None},
            ))
            return {'success': True, 'remaining': None, 'creditType': 'unlimited', 'transactionId': transaction_id}

        spec_credits = _as_int(entitlements.get('spec_credits'))
        if spec_credits > 0:
            remaining = spec_credits - 1
            transaction.update(entitlements_ref, {
                'spec_credits': firestore_module.Increment(-1),
                'updated_at': now_ts,
            })
            transaction.set(tx_ref, _transaction_record(
                user_id, transaction_id, -1, 'consume', 'paid', now_ts, spec_id=spec_id,
                metadata={'creditType': 'paid', 'previousCredits': spec_credits, 'remaining': remaining},
            ))
            return {'success': True, 'remaining': remaining, 'creditType': 'paid', 'transactionId': transaction_id}

        user_snapshot = user_ref.get(transaction=transaction)
        user_data = (user_snapshot.to_dict() or {}) if user_snapshot.exists else {}
        free_remaining = _as_int(user_data.get('free_specs_remaining'))
        if free_remaining <= 0:
            raise InsufficientCreditsError()

        owned = specs_repo.owned_by_query(db, user_id, FREE_TRIAL_SPEC_LIMIT + 1).stream(transaction=transaction)
        other_specs = [doc for doc in owned if doc.id != spec_id]
        if len(other_specs) >= FREE_TRIAL_SPEC_LIMIT:
            raise SpecLimitReachedError()

        remaining = free_remaining - 1
        transaction.update(user_ref, {'free_specs_remaining': firestore_module.Increment(-1)})
        transaction.set(tx_ref, _transaction_record(
            user_id, transaction_id, -1, 'consume', 'free_trial', now_ts, spec_id=spec_id,
            metadata={'creditType': 'free', 'previousCredits': free_remaining, 'remaining': remaining},
        ))
        return {'success': True, 'remaining': remaining, 'creditType': 'free', 'transactionId': transaction_id}

    try:
        result = _consume_in_transaction(db.transaction())
    except (InsufficientCreditsError, SpecLimitReachedError) as exc:
        log_event(logging.INFO, 'credit_consume_rejected', logger, user_id=user_id, spec_id=spec_id, reason=exc.error)
        raise
    log_event(
        logging.INFO, 'credit_consumed', logger,
        user_id=user_id, spec_id=spec_id, credit_type=result.get('creditType'),
        already_processed=bool(result.get('alreadyProcessed')), remaining=result.get('remaining'),
    )
    return result


def enable_pro_subscription(user_id, metadata=None, *, db, firestore_module, logger=None):
    """Turn on unlimited access and park the current balance in ``preserved_credits``."""
    _require_user_id(user_id)
    entitlements_ref = entitlements_repo.doc_ref(db, user_id)
    user_ref = users_repo.doc_ref(db, user_id)

    @firestore_module.transactional
    def _enable_in_transaction(transaction):
        entitlements = entitlements_repo.snapshot_to_entitlements(
            entitlements_ref.get(transaction=transaction), user_id,
        )
        preserved = _as_int(entitlements.get('preserved_credits'))
        if entitlements.get('unlimited'):
            return {'success': True, 'alreadyEnabled': True, 'preservedCredits': preserved}

        preserved += _as_int(entitlements.get('spec_credits'))
        now_ts = time.time()
        transaction.set(entitlements_ref, {
            'userId': user_id,
            'unlimited': True,
            'can_edit': True,
            'spec_credits': 0,
            'preserved_credits': preserved,
            'pro_metadata': dict(metadata or {}),
            'updated_at': now_ts,
        }, merge=True)
        transaction.set(user_ref, {'plan': 'pro', 'last_entitlement_sync_at': now_ts}, merge=True)
        return {'success': True, 'alreadyEnabled': False, 'preservedCredits': preserved}

    result = _enable_in_transaction(db.transaction())
    log_event(logging.INFO, 'pro_enabled', logger, user_id=user_id, **result)
    return result


def disable_pro_subscription(user_id, restore_credits=None, *, db, firestore_module, logger=None):
    """Turn off unlimited access; restore preserved credits unless ``restore_credits`` overrides them."""
    _require_user_id(user_id)
    if restore_credits is not None and (
        isinstance(restore_credits, bool) or not isinstance(restore_credits, int) or restore_credits < 0
    ):
        raise ValidationError('restore_credits must be a non-negative integer')
    entitlements_ref = entitlements_repo.doc_ref(db, user_id)
    user_ref = users_repo.doc_ref(db, user_id)

    @firestore_module.transactional
    def _disable_in_transaction(transaction):
        entitlements = entitlements_repo.snapshot_to_entitlements(
            entitlements_ref.get(transaction=transaction), user_id,
        )
        was_unlimited = bool(entitlements.get('unlimited'))
        if restore_credits is not None:
            restored = restore_credits
        elif was_unlimited:
            # credits granted while Pro was active sit in spec_credits
            restored = _as_int(entitlements.get('preserved_credits')) + _as_int(entitlements.get('spec_credits'))
        else:
            restored = _as_int(entitlements.get('spec_credits'))
        now_ts = time.time()
        transaction.set(entitlements_ref, {
            'userId': user_id,
            'unlimited': False,
            'can_edit': False,
            'spec_credits': restored,
            'preserved_credits': 0,
            'updated_at': now_ts,
        }, merge=True)
        transaction.set(user_ref, {'plan': 'free', 'last_entitlement_sync_at': now_ts}, merge=True)
        return {'success': True, 'wasUnlimited': was_unlimited, 'restoredCredits': restored}

    result = _disable_in_transaction(db.transaction())
    log_event(logging.INFO, 'pro_disabled', logger, user_id=user_id, **result)
    return result


def get_entitlements(user_id, *, db):
    entitlements = entitlements_repo.snapshot_to_entitlements(entitlements_repo.get_doc(db, user_id), user_id)
    return {
        'entitlements': {
            'unlimited': bool(entitlements.get('unlimited')),
            'spec_credits': _as_int(entitlements.get('spec_credits')),
            'can_edit': bool(entitlements.get('can_edit')),
            'preserved_credits': _as_int(entitlements.get('preserved_credits')),
        },
        'user': users_repo.get_data(db, user_id),
    }


def check_access(user_id, *, db, logger=None):
    try:
        data = get_entitlements(user_id, db=db)
    except Exception as exc:
        if logger is not None:
            logger.warning(f"Entitlement lookup failed for {user_id}: {exc}")
        return {
            'hasAccess': False,
            'entitlements': None,
            'paywallData': {'reason': 'error', 'message': 'Unable to verify your access. Please try again.'},
        }

    entitlements = data['entitlements']
    free_specs = _as_int((data['user'] or {}).get('free_specs_remaining'))
    if entitlements['unlimited'] or entitlements['spec_credits'] > 0 or free_specs > 0:
        return {'hasAccess': True, 'entitlements': entitlements, 'paywallData': None}
    return {
        'hasAccess': False,
        'entitlements': entitlements,
        'paywallData': {
            'reason': 'insufficient_credits',
            'message': 'You have no remaining spec credits',
            'freeSpecs': free_specs,
            'specCredits': entitlements['spec_credits'],
            'unlimited': False,
        },
    }


def list_transactions(user_id, limit=50, *, db, firestore_module):
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        limit = 50
    limit = min(max(limit, 1), MAX_TRANSACTIONS_PAGE)
    docs = transactions_repo.list_by_user_recent(db, user_id, limit, firestore_module)
    transactions = []
    for doc in docs:
        item = doc.to_dict() or {}
        item['id'] = doc.id
        transactions.append(item)
    return {'transactions': transactions, 'count': len(transactions), 'limit': limit, 'hasMore': len(transactions) == limit}
