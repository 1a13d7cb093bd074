"""
Owner-side lifecycle of secret records, and the delete cascades

Deletes run as two steps: the primary delete is committed first, then the
dependent share grants are swept in a separate best-effort step. A failed
sweep does not undo the primary delete; it is logged and reported back as
`cascade_error`. The sweep deletes by filter, so re-running it is harmless.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from access_control import Forbidden, ValidationFailed, require_owner_path, scoped_query
from store import CATEGORIES, PASSWORD_STRENGTHS, SecretRecord, ShareGrant, User, utcnow

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("title", "username", "password")

# request field -> column attribute
MUTABLE_FIELDS = {
    "title": "title",
    "username": "username",
    "password": "password",
    "website": "website",
    "notes": "notes",
    "category": "category",
    "passwordStrength": "password_strength",
    "favorite": "favorite",
}

# column widths in store.py; notes and password are Text but still capped
MAX_LENGTHS = {
    "title": 255,
    "username": 255,
    "password": 10000,
    "website": 1024,
    "notes": 10000,
}


@dataclass
class DeleteResult:
    deleted_id: int
    grants_removed: int = 0
    cascade_error: str | None = None


def _clean(fields: dict, partial: bool) -> dict:
    """Validate request fields and map them onto column names"""
    if not isinstance(fields, dict):
        raise ValidationFailed("Request body must be a JSON object")

    values = {}
    for name, column in MUTABLE_FIELDS.items():
        if name not in fields:
            continue
        value = fields[name]

        if name in REQUIRED_FIELDS:
            if not isinstance(value, str) or not value.strip():
                raise ValidationFailed(f"{name} is required")
        elif name in ("website", "notes"):
            if value is not None and not isinstance(value, str):
                raise ValidationFailed(f"{name} must be a string")
            value = value or None
        elif name == "category":
            if value not in CATEGORIES:
                raise ValidationFailed(f"category must be one of: {', '.join(CATEGORIES)}")
        elif name == "passwordStrength":
            if value not in PASSWORD_STRENGTHS:
                raise ValidationFailed(f"passwordStrength must be one of: {', '.join(PASSWORD_STRENGTHS)}")
        elif name == "favorite":
            if not isinstance(value, bool):
                raise ValidationFailed("favorite must be a boolean")

        limit = MAX_LENGTHS.get(name)
        if limit is not None and value is not None and len(value) > limit:
            raise ValidationFailed(f"{name} must be at most {limit} characters")

        values[column] = value

    if not partial:
        for name in REQUIRED_FIELDS:
            if name not in values:
                raise ValidationFailed(f"{name} is required")
    return values


def create_record(db, caller_id: int, fields: dict) -> SecretRecord:
    """Create a secret record owned by the caller; any ownerId in `fields` is ignored"""
    values = _clean(fields, partial=False)
    record = SecretRecord(owner_id=caller_id, last_used_at=utcnow(), **values)
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def update_record(db, path, caller_id: int, patch: dict) -> SecretRecord:
    """
    Partial update through the owner path. Only keys present in `patch` and
    listed in MUTABLE_FIELDS are written; id, ownerId and createdAt never are.
    """
    path = require_owner_path(path)
    values = _clean(patch, partial=True)
    values["updated_at"] = utcnow()

    updated = scoped_query(db, path, caller_id).update(
        {getattr(SecretRecord, column): value for column, value in values.items()},
        synchronize_session=False,
    )
    if updated == 0:
        db.rollback()
        raise Forbidden()
    db.commit()

    return db.query(SecretRecord).populate_existing().filter(SecretRecord.id == path.record_id).one()


def _sweep(db, *criteria) -> int:
    removed = db.query(ShareGrant).filter(*criteria).delete(synchronize_session=False)
    db.commit()
    return removed


def delete_record(db, path, caller_id: int) -> DeleteResult:
    """Delete an owned record, then every grant pointing at it"""
    path = require_owner_path(path)
    deleted = scoped_query(db, path, caller_id).delete(synchronize_session=False)
    if deleted == 0:
        db.rollback()
        raise Forbidden()
    db.commit()

    result = DeleteResult(deleted_id=path.record_id)
    try:
        result.grants_removed = _sweep(db, ShareGrant.password_id == path.record_id)
    except SQLAlchemyError as ex:
        db.rollback()
        logger.exception(f"[CASCADE] Grant sweep failed for record {path.record_id}")
        result.cascade_error = f"Share cleanup failed: {type(ex).__name__}"
    return result


def delete_user(db, user_id: int) -> DeleteResult:
    """
    Delete a user, then their records, the grants on those records, and the
    grants they received.
    """
    deleted = db.query(User).filter(User.id == user_id).delete(synchronize_session=False)
    if deleted == 0:
        db.rollback()
        raise Forbidden()
    db.commit()

    result = DeleteResult(deleted_id=user_id)
    try:
        owned_ids = [rid for (rid,) in db.query(SecretRecord.id).filter(SecretRecord.owner_id == user_id)]
        db.query(SecretRecord).filter(SecretRecord.owner_id == user_id).delete(synchronize_session=False)
        db.commit()

        removed = 0
        if owned_ids:
            removed += _sweep(db, ShareGrant.password_id.in_(owned_ids))
        removed += _sweep(db, ShareGrant.shared_with_id == user_id)
        result.grants_removed = removed
    except SQLAlchemyError as ex:
        db.rollback()
        logger.exception(f"[CASCADE] Cleanup failed for user {user_id}")
        result.cascade_error = f"Account cleanup failed: {type(ex).__name__}"
    return result
