"""Firestore accessors for entitlements collection."""

COLLECTION = 'entitlements'


def default_entitlements(user_id):
    return {
        'userId': user_id,
        'spec_credits': 0,
        'unlimited': False,
        'can_edit': False,
        'preserved_credits': 0,
    }


def doc_ref(db, user_id):
    return db.collection(COLLECTION).document(user_id)


def get_doc(db, user_id):
    return doc_ref(db, user_id).get()


def snapshot_to_entitlements(snapshot, user_id):
    data = default_entitlements(user_id)
    if snapshot is not None and snapshot.exists:
        data.update(snapshot.to_dict() or {})
    return data
