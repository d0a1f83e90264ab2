"""Firestore accessors for specs collection (owned by the spec generator)."""

from .query_utils import apply_where

COLLECTION = 'specs'


def owned_by_query(db, user_id, limit):
    return apply_where(db.collection(COLLECTION), 'userId', '==', user_id).limit(limit)
