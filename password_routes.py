"""
Password & Sharing Routes
- Owner CRUD on secret records
- Per-user favorite / last-used overlay (owner copy or share grant)
- Sharing by email, self-revocation, grantee listing
"""

import threading
from flask import request, jsonify, g
from functools import wraps
from time import time as unix_time
from sqlalchemy.exc import SQLAlchemyError

from access_control import VaultError, access_path
from overlay import list_records, mark_used, toggle_favorite
from records import create_record, delete_record, update_record
from sharing import list_grantees, share_record, unshare
from store import SessionLocal, iso

MAX_RATE_LIMIT_KEYS = 10000

# Rate limiting store (use Redis in production)
_rate_limit_store = {}
_rate_limit_lock = threading.Lock()

def _cleanup_rate_limit_store():
    """Remove expired entries from rate limit store"""
    now = unix_time()
    with _rate_limit_lock:
        expired_keys = [k for k, v in _rate_limit_store.items() if not v or max(v) < now - 3600]
        for k in expired_keys:
            del _rate_limit_store[k]

def rate_limit(key_fn, limit: int, window: int):
    """Simple rate limiter with cleanup to prevent memory leak"""
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            key = key_fn()
            now = unix_time()

            if len(_rate_limit_store) > MAX_RATE_LIMIT_KEYS:
                _cleanup_rate_limit_store()

            with _rate_limit_lock:
                timestamps = [t for t in _rate_limit_store.get(key, []) if t > now - window]
                if len(timestamps) >= limit:
                    _rate_limit_store[key] = timestamps
                    return jsonify(success=False, message="Rate limit exceeded"), 429
                timestamps.append(now)
                _rate_limit_store[key] = timestamps

            return fn(*args, **kwargs)
        return wrapper
    return decorator

def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}

def _query_flag(name: str):
    """
    Boolean query parameter: absent or "false" is False, "true" is True.
    Any other value is returned as-is so access_path rejects it.
    """
    raw = request.args.get(name)
    if raw is None or raw.lower() == "false":
        return False
    if raw.lower() == "true":
        return True
    return raw

def register_password_routes(app, jwt_required, logger):
    """Register all password and sharing routes to Flask app"""

    def _fail(tag: str, ex: Exception):
        if isinstance(ex, VaultError):
            return jsonify(success=False, message=ex.message), ex.status_code
        if isinstance(ex, SQLAlchemyError):
            logger.exception(f"[{tag}] DB error")
            return jsonify(success=False, message="Service unavailable"), 503
        logger.exception(f"[{tag}] Error")
        return jsonify(success=False, message="Server error"), 500

    # ============================================================
    # OWNER CRUD
    # ============================================================

    @app.route("/api/passwords", methods=["POST"])
    @jwt_required
    def password_create():
        """Create a record owned by the caller"""
        db = SessionLocal()
        try:
            record = create_record(db, g.current_uid, _body())
            logger.info(f"[PASSWORD_CREATE] User {g.current_uid} created record {record.id}")
            return jsonify(success=True, password=record.to_dict()), 201
        except Exception as ex:
            db.rollback()
            return _fail("PASSWORD_CREATE", ex)
        finally:
            db.close()

    @app.route("/api/passwords", methods=["GET"])
    @jwt_required
    def password_list():
        """Owned records plus records shared with the caller"""
        db = SessionLocal()
        try:
            listing = list_records(db, g.current_uid)
            return jsonify(success=True, **listing), 200
        except Exception as ex:
            return _fail("PASSWORD_LIST", ex)
        finally:
            db.close()

    @app.route("/api/passwords/<int:record_id>", methods=["PUT"])
    @jwt_required
    def password_update(record_id: int):
        """Partial update (owner only)"""
        data = _body()
        db = SessionLocal()
        try:
            path = access_path(record_id, data.pop("shared", False))
            record = update_record(db, path, g.current_uid, data)
            logger.info(f"[PASSWORD_UPDATE] User {g.current_uid} updated record {record_id}")
            return jsonify(success=True, password=record.to_dict()), 200
        except Exception as ex:
            db.rollback()
            return _fail("PASSWORD_UPDATE", ex)
        finally:
            db.close()

    @app.route("/api/passwords/<int:record_id>", methods=["DELETE"])
    @jwt_required
    def password_delete(record_id: int):
        """Delete record (owner only) and every grant on it"""
        db = SessionLocal()
        try:
            path = access_path(record_id, _body().get("shared", False))
            result = delete_record(db, path, g.current_uid)
            logger.info(f"[PASSWORD_DELETE] User {g.current_uid} deleted record {record_id} ({result.grants_removed} grants removed)")

            body = {"success": True, "message": "Deleted"}
            if result.cascade_error:
                body["cascade_error"] = result.cascade_error
            return jsonify(body), 200
        except Exception as ex:
            db.rollback()
            return _fail("PASSWORD_DELETE", ex)
        finally:
            db.close()

    # ============================================================
    # OVERLAY STATE
    # ============================================================

    @app.route("/api/passwords/<int:key>/favorite", methods=["PATCH"])
    @jwt_required
    def password_favorite(key: int):
        """Toggle favorite on the owner's record or the caller's grant"""
        db = SessionLocal()
        try:
            path = access_path(key, _body().get("shared", False))
            favorite = toggle_favorite(db, path, g.current_uid)
            return jsonify(success=True, favorite=favorite), 200
        except Exception as ex:
            db.rollback()
            return _fail("PASSWORD_FAVORITE", ex)
        finally:
            db.close()

    @app.route("/api/passwords/<int:key>/use", methods=["PATCH"])
    @jwt_required
    def password_use(key: int):
        """Stamp lastUsedAt on the owner's record or the caller's grant"""
        db = SessionLocal()
        try:
            path = access_path(key, _body().get("shared", False))
            used_at = mark_used(db, path, g.current_uid)
            return jsonify(success=True, lastUsedAt=iso(used_at)), 200
        except Exception as ex:
            db.rollback()
            return _fail("PASSWORD_USE", ex)
        finally:
            db.close()

    # ============================================================
    # SHARING
    # ============================================================

    @app.route("/api/passwords/<int:record_id>/share", methods=["POST"])
    @jwt_required
    @rate_limit(lambda: f"share:{g.current_uid}", limit=20, window=60)
    def password_share(record_id: int):
        """Share an owned record with other users by email"""
        data = _body()
        db = SessionLocal()
        try:
            path = access_path(record_id, data.get("shared", False))
            outcomes = share_record(db, path, g.current_uid, data.get("emails"))

            ok = sum(1 for o in outcomes if o.ok)
            logger.info(f"[SHARE] User {g.current_uid} shared record {record_id}: {ok} ok, {len(outcomes) - ok} failed")
            return jsonify(
                success=True,
                message="Share operation completed",
                results=[o.to_dict() for o in outcomes],
            ), 200
        except Exception as ex:
            db.rollback()
            return _fail("SHARE", ex)
        finally:
            db.close()

    @app.route("/api/passwords/shared/<int:grant_id>", methods=["DELETE"])
    @jwt_required
    def password_unshare(grant_id: int):
        """Recipient removes a record shared with them"""
        db = SessionLocal()
        try:
            unshare(db, grant_id, g.current_uid)
            logger.info(f"[UNSHARE] User {g.current_uid} removed grant {grant_id}")
            return jsonify(success=True, message="Removed"), 200
        except Exception as ex:
            db.rollback()
            return _fail("UNSHARE", ex)
        finally:
            db.close()

    @app.route("/api/passwords/<int:record_id>/shared-users", methods=["GET"])
    @jwt_required
    def password_shared_users(record_id: int):
        """Users an owned record is shared with"""
        db = SessionLocal()
        try:
            path = access_path(record_id, _query_flag("shared"))
            grants = list_grantees(db, path, g.current_uid)
            return jsonify(success=True, grants=grants), 200
        except Exception as ex:
            return _fail("SHARED_USERS", ex)
        finally:
            db.close()
