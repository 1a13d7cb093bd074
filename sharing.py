"""
Sharing workflow: grant, revoke and enumerate recipient access to a record
"""

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError

from access_control import Forbidden, SharedPath, ValidationFailed, authorize, require_owner_path, scoped_query
from store import ShareGrant, User, iso

logger = logging.getLogger(__name__)

USER_NOT_FOUND = "User not found"
SELF_SHARE = "Cannot share with yourself"
ALREADY_SHARED = "Already shared"
INVALID_EMAIL = "Invalid email"


@dataclass
class ShareOutcome:
    email: str
    status: str
    reason: str | None = None
    shared_id: int | None = None

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_dict(self):
        out = {"email": self.email, "status": self.status}
        if self.ok:
            out["sharedId"] = self.shared_id
        else:
            out["reason"] = self.reason
        return out


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _share_one(db, record_id: int, caller_id: int, email) -> ShareOutcome:
    if not isinstance(email, str) or not email.strip():
        return ShareOutcome(email=email, status="failed", reason=INVALID_EMAIL)

    recipient = db.query(User).filter(User.email == normalize_email(email)).first()
    if recipient is None:
        return ShareOutcome(email=email, status="failed", reason=USER_NOT_FOUND)

    if recipient.id == caller_id:
        return ShareOutcome(email=email, status="failed", reason=SELF_SHARE)

    existing = db.query(ShareGrant.id).filter(
        ShareGrant.password_id == record_id,
        ShareGrant.shared_with_id == recipient.id,
    ).first()
    if existing is not None:
        return ShareOutcome(email=email, status="failed", reason=ALREADY_SHARED)

    grant = ShareGrant(password_id=record_id, shared_with_id=recipient.id, favorite=False, last_used_at=None)
    db.add(grant)
    try:
        db.commit()
    except IntegrityError:
        # lost a race with a concurrent share of the same pair
        db.rollback()
        logger.info(f"[SHARE] Concurrent duplicate grant for record {record_id}")
        return ShareOutcome(email=email, status="failed", reason=ALREADY_SHARED)

    return ShareOutcome(email=email, status="success", shared_id=grant.id)


def share_record(db, path, caller_id: int, emails) -> list[ShareOutcome]:
    """
    Share an owned record with each email in order. Ownership is checked once
    up front; after that every email gets its own outcome and its own commit,
    so one failure never undoes an earlier success.
    """
    if not isinstance(emails, list) or not emails:
        raise ValidationFailed("No emails provided")

    path = require_owner_path(path)
    authorize(db, path, caller_id)

    return [_share_one(db, path.record_id, caller_id, email) for email in emails]


def unshare(db, grant_id: int, caller_id: int) -> None:
    """Recipient removes their own grant; another user's grant is never touched"""
    deleted = scoped_query(db, SharedPath(grant_id), caller_id).delete(synchronize_session=False)
    if deleted == 0:
        db.rollback()
        raise Forbidden()
    db.commit()


def list_grantees(db, path, caller_id: int) -> list[dict]:
    """Grants on an owned record, with the recipient resolved to name and email"""
    path = require_owner_path(path)
    authorize(db, path, caller_id)

    rows = (
        db.query(ShareGrant, User)
        .join(User, User.id == ShareGrant.shared_with_id)
        .filter(ShareGrant.password_id == path.record_id)
        .order_by(ShareGrant.id)
        .all()
    )
    return [
        {
            "id": grant.id,
            "passwordId": grant.password_id,
            "sharedWith": {"id": user.id, "name": user.name, "email": user.email},
            "favorite": bool(grant.favorite),
            "lastUsedAt": iso(grant.last_used_at),
            "createdAt": iso(grant.created_at),
        }
        for grant, user in rows
    ]
