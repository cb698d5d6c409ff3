"""
Ledger Store access helpers.

The engine only needs four primitives from the relational store:
fetch by id, find by filter, insert, and a compare-and-swap style
conditional update. Everything else in services/ goes through these.
"""
import json
from typing import Any, Optional

from sqlalchemy.orm import Session

from chitfund.errors import NotFound
from chitfund.models import ActivityLog


def fetch(db: Session, model, entity_id: int, label: Optional[str] = None):
    """Load one row by primary key or raise NotFound."""
    obj = db.get(model, entity_id)
    if obj is None:
        raise NotFound(f"{label or model.__name__} {entity_id} not found")
    return obj


def find(db: Session, model, *criteria, order_by=None) -> list:
    query = db.query(model).filter(*criteria)
    if order_by is not None:
        query = query.order_by(*order_by) if isinstance(order_by, (list, tuple)) else query.order_by(order_by)
    return query.all()


def insert(db: Session, obj):
    db.add(obj)
    db.flush()
    return obj


def compare_and_set(db: Session, model, entity_id: int, expected: dict[str, Any], changes: dict[str, Any]) -> bool:
    """
    Conditional update: apply `changes` to row `entity_id` only if every
    column in `expected` still holds the given value. Returns True when the
    row was updated, False when another writer got there first.
    """
    criteria = [model.id == entity_id]
    criteria.extend(getattr(model, col) == val for col, val in expected.items())
    updated = db.query(model).filter(*criteria).update(
        {getattr(model, col): val for col, val in changes.items()},
        synchronize_session=False,
    )
    if updated == 1:
        # Reload lazily so the in-session object reflects the new row
        obj = db.get(model, entity_id)
        if obj is not None:
            db.expire(obj)
    return updated == 1


def log_activity(db: Session, entity_type: str, entity_id: int, action: str, description: str,
                 user_id: int = None, metadata: dict = None):
    entry = ActivityLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        description=description,
        user_id=user_id,
        metadata_json=json.dumps(metadata, default=str) if metadata else None,
    )
    db.add(entry)
