"""
Overlay state: per-user favorite / lastUsedAt

The owner's favorite and lastUsedAt live on the secret record itself; each
recipient's live on their share grant. Listing merges both views.
"""

from sqlalchemy import not_

from access_control import Forbidden, scoped_query, target_model
from store import SecretRecord, ShareGrant, as_utc, iso, utcnow


def list_records(db, caller_id: int) -> dict:
    """Return {"owned": [...], "shared": [...]} for the caller"""
    owned = (
        db.query(SecretRecord)
        .filter(SecretRecord.owner_id == caller_id)
        .order_by(SecretRecord.id)
        .all()
    )

    # inner join: a grant whose record is already gone is not listed
    rows = (
        db.query(ShareGrant, SecretRecord)
        .join(SecretRecord, SecretRecord.id == ShareGrant.password_id)
        .filter(ShareGrant.shared_with_id == caller_id)
        .order_by(ShareGrant.id)
        .all()
    )

    shared = []
    for grant, record in rows:
        item = record.to_dict()
        item["favorite"] = bool(grant.favorite)
        item["lastUsedAt"] = iso(grant.last_used_at)
        item["shared"] = True
        item["sharedRecordId"] = grant.id
        shared.append(item)

    return {"owned": [r.to_dict() for r in owned], "shared": shared}


def toggle_favorite(db, path, caller_id: int) -> bool:
    """Flip favorite on the record (owner path) or grant (shared path)"""
    model = target_model(path)
    updated = scoped_query(db, path, caller_id).update(
        {model.favorite: not_(model.favorite)},
        synchronize_session=False,
    )
    if updated == 0:
        db.rollback()
        raise Forbidden()

    key = path.record_id if model is SecretRecord else path.grant_id
    favorite = db.query(model.favorite).filter(model.id == key).scalar()
    db.commit()
    return bool(favorite)


def mark_used(db, path, caller_id: int):
    """Stamp lastUsedAt on the record (owner path) or grant (shared path)"""
    model = target_model(path)
    updated = scoped_query(db, path, caller_id).update(
        {model.last_used_at: utcnow()},
        synchronize_session=False,
    )
    if updated == 0:
        db.rollback()
        raise Forbidden()

    # report what the column kept, which may be truncated to its precision
    key = path.record_id if model is SecretRecord else path.grant_id
    stamped = db.query(model.last_used_at).filter(model.id == key).scalar()
    db.commit()
    return as_utc(stamped)
