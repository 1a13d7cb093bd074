"""
Access control for secret records and share grants

Every operation addresses its target through exactly one access path:
- OwnerPath(record_id): the caller must own the secret record
- SharedPath(grant_id): the caller must be the recipient of the share grant

The path is chosen from the request's explicit `shared` flag, never from the
shape of the key. A lookup that finds nothing under the chosen path raises
Forbidden whether the key is unknown or belongs to somebody else, so callers
cannot probe for records they do not own.
"""

from dataclasses import dataclass

from sqlalchemy import exists

from store import SecretRecord, ShareGrant


class VaultError(Exception):
    status_code = 500
    message = "Server error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)
        if message:
            self.message = message


class Forbidden(VaultError):
    status_code = 403
    message = "Not allowed"


class ValidationFailed(VaultError):
    status_code = 400
    message = "Invalid request"


@dataclass(frozen=True)
class OwnerPath:
    record_id: int


@dataclass(frozen=True)
class SharedPath:
    grant_id: int


AccessPath = OwnerPath | SharedPath


def access_path(key, shared=False) -> AccessPath:
    """Resolve a raw key plus the request's `shared` flag into an access path"""
    if isinstance(key, bool) or not isinstance(key, int):
        raise ValidationFailed("Invalid key")
    if shared is True:
        return SharedPath(key)
    if shared not in (False, None):
        raise ValidationFailed("shared must be a boolean")
    return OwnerPath(key)


def require_owner_path(path: AccessPath) -> OwnerPath:
    """Owner-only operations reject a grant key outright instead of no-opping"""
    if not isinstance(path, OwnerPath):
        raise Forbidden()
    return path


def scoped_query(db, path: AccessPath, caller_id: int):
    """
    Query for the single entity `caller_id` may act on through `path`.
    Mutations are issued as .update()/.delete() on this query so the
    authorization filter and the write are one statement.
    """
    if isinstance(path, OwnerPath):
        return db.query(SecretRecord).filter(
            SecretRecord.id == path.record_id,
            SecretRecord.owner_id == caller_id,
        )
    if isinstance(path, SharedPath):
        return db.query(ShareGrant).filter(
            ShareGrant.id == path.grant_id,
            ShareGrant.shared_with_id == caller_id,
            exists().where(SecretRecord.id == ShareGrant.password_id),
        )
    raise TypeError(f"unknown access path: {path!r}")


def authorize(db, path: AccessPath, caller_id: int):
    """Fetch the record (owner path) or grant (shared path), or raise Forbidden"""
    entity = scoped_query(db, path, caller_id).first()
    if entity is None:
        raise Forbidden()
    return entity


def target_model(path: AccessPath):
    return SecretRecord if isinstance(path, OwnerPath) else ShareGrant
