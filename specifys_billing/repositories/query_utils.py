"""Shared Firestore query helpers.

Uses keyword-based filters to avoid positional-argument warnings in newer
Firestore SDK versions. Falls back to positional style for simple test doubles
that do not support keyword filters.
"""

from google.cloud.firestore_v1.base_query import FieldFilter


def apply_where(query, field_path, op_string, value):
    try:
        return query.where(filter=FieldFilter(field_path, op_string, value))
    except TypeError:
        return query.where(field_path, op_string, value)


def newest_first(query, field_path, firestore_module, limit=None):
    query = query.order_by(field_path, direction=firestore_module.Query.DESCENDING)
    if isinstance(limit, int) and limit > 0:
        query = query.limit(limit)
    return query


def count_query(query):
    """Aggregation count, or a streamed count when aggregation is unavailable."""
    try:
        agg = query.count().get()
        if agg:
            return int(agg[0][0].value)
    except (AttributeError, IndexError, TypeError):
        pass
    return sum(1 for _ in query.stream())
