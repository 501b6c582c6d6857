import uuid
from datetime import timedelta

from flask import Blueprint, current_app, jsonify, request
from flask_login import LoginManager, UserMixin
from werkzeug.security import check_password_hash

from models import AuthToken, db, utcnow

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")

# Flask-Login setup
login_manager = LoginManager()
login_manager.session_protection = None


class TokenUser(UserMixin):
    """The single owner of the app, identified by the bearer token they presented."""

    def __init__(self, record: AuthToken):
        self.id = record.token
        self.expires_at = record.expires_at


def bearer_token(req=None):
    header = (req or request).headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    return header[len("Bearer "):].strip() or None


def find_valid_token(token):
    if not token:
        return None
    return AuthToken.query.filter(AuthToken.token == token, AuthToken.expires_at > utcnow()).first()


@login_manager.request_loader
def load_user_from_request(req):
    record = find_valid_token(bearer_token(req))
    return TokenUser(record) if record else None


@login_manager.unauthorized_handler
def unauthorized():
    message = "Invalid or expired token" if bearer_token() else "No authentication token provided"
    return jsonify({"error": "Access denied", "message": message}), 403


def cleanup_expired_tokens():
    """Delete expired tokens and return how many were removed."""
    removed = AuthToken.query.filter(AuthToken.expires_at <= utcnow()).delete(synchronize_session=False)
    db.session.commit()
    if removed:
        current_app.logger.info("Cleaned up %d expired tokens", removed)
    return removed


# ==============================
# ROUTES
# ==============================

@auth_bp.post("/login")
def login():
    payload = request.get_json(silent=True) or {}
    pin = payload.get("pin")
    pin_hash = current_app.config.get("PIN_HASH")

    if not pin_hash:
        current_app.logger.error("PIN_CODE not configured in environment")
        return jsonify({"error": "Server configuration error",
                        "message": "Authentication is not properly configured"}), 500
    if not pin:
        return jsonify({"error": "Bad request", "message": "PIN code is required"}), 400
    if not check_password_hash(pin_hash, str(pin)):
        return jsonify({"error": "Unauthorized", "message": "Invalid PIN code"}), 401

    cleanup_expired_tokens()
    record = AuthToken(
        token=str(uuid.uuid4()),
        expires_at=utcnow() + timedelta(days=current_app.config["TOKEN_VALIDITY_DAYS"]),
    )
    db.session.add(record)
    db.session.commit()
    return jsonify({"token": record.token, "expiresAt": record.expires_at.isoformat()})


@auth_bp.post("/logout")
def logout():
    token = bearer_token()
    if not token:
        return jsonify({"error": "Bad request", "message": "No token provided"}), 400

    removed = AuthToken.query.filter_by(token=token).delete(synchronize_session=False)
    db.session.commit()
    if not removed:
        return jsonify({"error": "Not found", "message": "Token not found or already invalidated"}), 404
    return jsonify({"message": "Successfully logged out"})


@auth_bp.get("/verify")
def verify():
    token = bearer_token()
    if not token:
        return jsonify({"valid": False, "message": "No token provided"}), 403

    record = find_valid_token(token)
    if record is None:
        return jsonify({"valid": False, "message": "Invalid or expired token"}), 403
    return jsonify({"valid": True, "expiresAt": record.expires_at.isoformat()})
