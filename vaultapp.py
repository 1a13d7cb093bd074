from pathlib import Path
from dotenv import load_dotenv
load_dotenv(dotenv_path=Path(__file__).parent / ".env")

from datetime import datetime, timedelta, timezone
from flask import Flask, request, jsonify, g, current_app
from flask_cors import CORS
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
import bcrypt
import os
import logging
from functools import wraps
import jwt
import re

from access_control import VaultError
from records import delete_user
from store import SessionLocal, User, get_db_url, init_store

# ---------- Logging ----------
logging.basicConfig(level=logging.INFO)

# ---------- Helpers / Env ----------
def _require_env(name: str) -> str:
    val = os.getenv(name)
    if not val:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return val

def load_settings(overrides: dict | None = None) -> dict:
    overrides = dict(overrides or {})
    settings = {
        "DATABASE_URL": overrides.pop("DATABASE_URL", None) or get_db_url(),
        "JWT_SECRET": overrides.pop("JWT_SECRET", None) or _require_env("JWT_SECRET"),
        "JWT_ALGO": os.getenv("JWT_ALGO", "HS256"),
        "JWT_EXP_MINUTES": int(os.getenv("JWT_EXP_MINUTES", "60")),
        "JWT_ISSUER": os.getenv("JWT_ISSUER", "password-vault-api"),
        "JWT_AUDIENCE": os.getenv("JWT_AUDIENCE", "password-vault-clients"),
        "ALLOWED_ORIGINS": os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(","),
    }
    settings.update(overrides)
    return settings

# ---------- Validation ----------
def _text(data: dict, key: str) -> str:
    """String field from a JSON body; anything that is not a string counts as missing"""
    value = data.get(key)
    return value if isinstance(value, str) else ""

def validate_name(name: str) -> tuple[bool, str]:
    if not name:
        return False, "Name is required"
    if len(name) > 100:
        return False, "Name must be less than 100 characters"
    return True, ""

def validate_email(email: str) -> tuple[bool, str]:
    if not email:
        return False, "Email is required"
    if len(email) > 255:
        return False, "Email is too long"
    if not re.match(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$', email):
        return False, "Invalid email format"
    return True, ""

def validate_password(password: str) -> tuple[bool, str]:
    if not password:
        return False, "Password is required"
    if len(password) < 8:
        return False, "Password must be at least 8 characters"
    if len(password) > 128:
        return False, "Password is too long"
    return True, ""

# ---------- JWT Helpers ----------
def create_access_token(uid: int, email: str) -> str:
    cfg = current_app.config
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(uid),
        "email": email,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=cfg["JWT_EXP_MINUTES"])).timestamp()),
        "iss": cfg["JWT_ISSUER"],
        "aud": cfg["JWT_AUDIENCE"],
    }
    return jwt.encode(payload, cfg["JWT_SECRET"], algorithm=cfg["JWT_ALGO"])

def jwt_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return jsonify(success=False, message="Missing or invalid Authorization header"), 401

        cfg = current_app.config
        token = auth_header.split(" ", 1)[1].strip()
        try:
            payload = jwt.decode(
                token,
                cfg["JWT_SECRET"],
                algorithms=[cfg["JWT_ALGO"]],
                audience=cfg["JWT_AUDIENCE"],
                issuer=cfg["JWT_ISSUER"],
            )
            uid = int(payload.get("sub", 0))
        except jwt.ExpiredSignatureError:
            return jsonify(success=False, message="Token expired"), 401
        except (jwt.InvalidTokenError, ValueError):
            return jsonify(success=False, message="Invalid token"), 401

        # tokens outlive deleted accounts
        db = SessionLocal()
        try:
            if db.query(User.id).filter(User.id == uid).first() is None:
                return jsonify(success=False, message="Invalid token"), 401
        except SQLAlchemyError:
            current_app.logger.exception("[AUTH] User lookup failed")
            return jsonify(success=False, message="Service unavailable"), 503
        finally:
            db.close()

        g.jwt_payload = payload
        g.current_uid = uid
        return fn(*args, **kwargs)
    return wrapper

def _error(ex: VaultError):
    return jsonify(success=False, message=ex.message), ex.status_code

# ---------- App ----------
def create_app(overrides: dict | None = None) -> Flask:
    app = Flask(__name__)
    app.config["JSONIFY_PRETTYPRINT_REGULAR"] = False
    app.config.update(load_settings(overrides))
    app.logger.setLevel(logging.INFO)

    # ---------- CORS ----------
    CORS(app, origins=app.config["ALLOWED_ORIGINS"], supports_credentials=True)

    init_store(app.config["DATABASE_URL"])

    @app.teardown_appcontext
    def _remove_session(exc):
        SessionLocal.remove()

    # ---------- Error Handlers ----------
    @app.errorhandler(400)
    def _bad_request(e):
        return jsonify(success=False, message=str(e.description or "Bad request")), 400

    @app.errorhandler(401)
    def _unauth(e):
        return jsonify(success=False, message=str(e.description or "Unauthorized")), 401

    @app.errorhandler(403)
    def _forbidden(e):
        return jsonify(success=False, message=str(e.description or "Forbidden")), 403

    @app.errorhandler(404)
    def _not_found(e):
        return jsonify(success=False, message="Not found"), 404

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return jsonify(success=False, message="Method not allowed"), 405

    @app.errorhandler(500)
    def _server_error(e):
        return jsonify(success=False, message="Server error"), 500

    # ---------- Health Checks ----------
    @app.route("/api/ping")
    def ping():
        return jsonify(ok=True)

    @app.route("/api/health")
    def health():
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1")).scalar()
            return jsonify(ok=True, db=True)
        except SQLAlchemyError:
            app.logger.exception("[HEALTH] DB check failed")
            return jsonify(ok=False, db=False), 500
        finally:
            db.close()

    # ---------- AUTH: REGISTER ----------
    @app.route("/register", methods=["POST"])
    def auth_register():
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            data = {}

        name = _text(data, "name").strip()
        email = _text(data, "email").strip().lower()
        password = _text(data, "password")

        for valid, msg in (validate_name(name), validate_email(email), validate_password(password)):
            if not valid:
                return jsonify(success=False, message=msg), 400

        db = SessionLocal()
        try:
            if db.query(User.id).filter(User.email == email).first():
                return jsonify(success=False, message="Email already in use"), 409

            password_hash = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")
            user = User(name=name, email=email, password_hash=password_hash)
            db.add(user)
            db.commit()

            app.logger.info(f"[REGISTER] New user registered (uid={user.id})")
            return jsonify(
                success=True,
                token=create_access_token(user.id, user.email),
                user=user.to_public(),
            ), 201

        except IntegrityError:
            db.rollback()
            return jsonify(success=False, message="Email already in use"), 409
        except SQLAlchemyError:
            app.logger.exception("[REGISTER] DB error")
            return jsonify(success=False, message="Service unavailable"), 503
        except Exception:
            app.logger.exception("[REGISTER] Unhandled error")
            return jsonify(success=False, message="Server error"), 500
        finally:
            db.close()

    # ---------- AUTH: LOGIN ----------
    @app.route("/login", methods=["POST"])
    def auth_login():
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            data = {}
        email = _text(data, "email").strip().lower()
        password = _text(data, "password")

        if not email or not password:
            return jsonify(success=False, message="Email and password required"), 400

        db = SessionLocal()
        try:
            user = db.query(User).filter(User.email == email).first()
            if not user:
                return jsonify(success=False, message="Invalid credentials"), 401

            try:
                if not bcrypt.checkpw(password.encode("utf-8"), user.password_hash.encode("utf-8")):
                    return jsonify(success=False, message="Invalid credentials"), 401
            except ValueError:
                app.logger.exception("[LOGIN] bcrypt error")
                return jsonify(success=False, message="Invalid credentials"), 401

            return jsonify(
                success=True,
                token=create_access_token(user.id, user.email),
                user=user.to_public(),
            ), 200

        except SQLAlchemyError:
            app.logger.exception("[LOGIN] DB error")
            return jsonify(success=False, message="Service unavailable"), 503
        except Exception:
            app.logger.exception("[LOGIN] Unhandled error")
            return jsonify(success=False, message="Server error"), 500
        finally:
            db.close()

    # ---------- AUTH: DELETE ACCOUNT ----------
    @app.route("/api/auth/account", methods=["DELETE"])
    @jwt_required
    def auth_delete_account():
        """Delete the caller's account and everything it owns or received"""
        db = SessionLocal()
        try:
            result = delete_user(db, g.current_uid)
            app.logger.info(f"[ACCOUNT_DELETE] User {g.current_uid} deleted ({result.grants_removed} grants removed)")
            body = {"success": True, "message": "Account deleted"}
            if result.cascade_error:
                body["cascade_error"] = result.cascade_error
            return jsonify(body), 200

        except VaultError as ex:
            return _error(ex)
        except SQLAlchemyError:
            app.logger.exception("[ACCOUNT_DELETE] DB error")
            return jsonify(success=False, message="Service unavailable"), 503
        except Exception:
            app.logger.exception("[ACCOUNT_DELETE] Error")
            return jsonify(success=False, message="Server error"), 500
        finally:
            db.close()

    # ============================================================
    # PASSWORDS & SHARING
    # ============================================================

    from password_routes import register_password_routes
    register_password_routes(app, jwt_required, app.logger)

    return app

# ---------- Run ----------
if __name__ == "__main__":
    create_app().run(debug=True, host="0.0.0.0", port=int(os.getenv("PORT", "5000")))
