"""Firestore accessors for credits_transactions collection."""

from .query_utils import apply_where, newest_first

COLLECTION = 'credits_transactions'


def doc_ref(db, transaction_id):
    return db.collection(COLLECTION).document(transaction_id)


def get_doc(db, transaction_id):
    return doc_ref(db, transaction_id).get()


def list_by_user_recent(db, user_id, limit, firestore_module):
    query = apply_where(db.collection(COLLECTION), 'userId', '==', user_id)
    return list(newest_first(query, 'timestamp', firestore_module, limit).stream())
