"""Firestore accessors for users collection."""

from .query_utils import apply_where

COLLECTION = 'users'


def doc_ref(db, uid):
    return db.collection(COLLECTION).document(uid)


def get_doc(db, uid):
    return doc_ref(db, uid).get()


def get_data(db, uid):
    snapshot = get_doc(db, uid)
    return (snapshot.to_dict() or None) if snapshot.exists else None


def set_doc(db, uid, data, merge=False):
    return doc_ref(db, uid).set(data, merge=merge)


def find_uid_by_field(db, field_path, value):
    if not value:
        return None
    query = apply_where(db.collection(COLLECTION), field_path, '==', value).limit(1)
    for doc in query.stream():
        return doc.id
    return None


def find_uid_by_lemon_customer_or_email(db, customer_id, email):
    uid = find_uid_by_field(db, 'lemon_customer_id', str(customer_id) if customer_id else None)
    if uid:
        return uid
    return find_uid_by_field(db, 'email', str(email).strip() if email else None)
