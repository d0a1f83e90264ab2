"""Firestore accessors for purchases collection."""

from .query_utils import apply_where, count_query, newest_first

COLLECTION = 'purchases'


def doc_ref(db, order_id):
    return db.collection(COLLECTION).document(str(order_id))


def get_doc(db, order_id):
    return doc_ref(db, order_id).get()


def set_doc(db, order_id, data, merge=True):
    return doc_ref(db, order_id).set(data, merge=merge)


def update_doc(db, order_id, updates):
    return doc_ref(db, order_id).update(updates)


def list_by_user_recent(db, user_id, limit, firestore_module):
    query = apply_where(db.collection(COLLECTION), 'userId', '==', user_id)
    return list(newest_first(query, 'createdAt', firestore_module, limit).stream())


def count_by_mode(db, test_mode):
    return count_query(apply_where(db.collection(COLLECTION), 'testMode', '==', bool(test_mode)))
