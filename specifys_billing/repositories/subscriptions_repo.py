"""Firestore accessors for subscriptions collection."""

from .query_utils import apply_where

COLLECTION = 'subscriptions'


def doc_ref(db, user_id):
    return db.collection(COLLECTION).document(user_id)


def get_doc(db, user_id):
    return doc_ref(db, user_id).get()


def get_data(db, user_id):
    snapshot = get_doc(db, user_id)
    return (snapshot.to_dict() or {}) if snapshot.exists else {}


def set_doc(db, user_id, data, merge=True):
    return doc_ref(db, user_id).set(data, merge=merge)


def find_user_id_by_subscription_id(db, subscription_id):
    if not subscription_id:
        return None
    query = apply_where(db.collection(COLLECTION), 'lemon_subscription_id', '==', str(subscription_id)).limit(1)
    for doc in query.stream():
        return doc.id
    return None
