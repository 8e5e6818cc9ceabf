from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import os
import secrets
import threading
import time
from pathlib import Path
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models.checkout_models import Profile
from services.access_policy import ROLES, authorize, normalize_role, rights_for
from services.errors import AccessDenied, ConflictError, NotAuthenticated, NotFoundError, PlatformError, ValidationError


LOGGER = logging.getLogger("equipment_checkout.auth")

MIN_PASSWORD_LENGTH = 6
SESSION_TTL_SECONDS = int(os.environ.get("SESSION_TTL_SECONDS") or str(60 * 60 * 12))
APPROVABLE_ROLES = {"teacher", "manager", "admin"}

_BASE_DIR = Path(__file__).resolve().parent.parent
_DATA_DIR = Path(os.environ.get("CHECKOUT_DATA_DIR") or (_BASE_DIR / "data"))
_REVOKED_TOKENS_PATH = _DATA_DIR / "revoked_sessions.json"
_LOCK = threading.Lock()
_SESSIONS: dict[str, dict[str, Any]] = {}


def _require_session_secret() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


_SESSION_SECRET = _require_session_secret()


def _ensure_data_dir() -> None:
    _DATA_DIR.mkdir(parents=True, exist_ok=True)


def _password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        (password or "").encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    )
    return raw.hex()


def _normalize_email(raw: str | None) -> str:
    return (raw or "").strip().lower()


def serialize_profile(profile: Profile) -> dict[str, Any]:
    role = normalize_role(profile.Role)
    return {
        "profileID": profile.ProfileID,
        "email": profile.Email,
        "fullName": profile.FullName,
        "role": role,
        "rights": rights_for(role),
        "createdDate": profile.CreatedDate,
    }


def register_profile(db: Session, *, email: str | None, password: str | None, full_name: str | None) -> Profile:
    """Create a new account; it stays in the waiting role until approved."""
    clean_email = _normalize_email(email)
    clean_name = (full_name or "").strip()
    candidate = (password or "").strip()
    if not clean_email or "@" not in clean_email:
        raise ValidationError("A valid email is required.")
    if not clean_name:
        raise ValidationError("Full name is required.")
    if len(candidate) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")

    existing = db.execute(select(Profile.ProfileID).where(func.lower(Profile.Email) == clean_email)).first()
    if existing:
        raise ConflictError("An account with this email already exists.")

    salt = secrets.token_hex(16)
    profile = Profile(
        Email=clean_email,
        FullName=clean_name,
        Role="waiting",
        PasswordSalt=salt,
        PasswordHash=_password_hash(candidate, salt),
    )
    try:
        db.add(profile)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("An account with this email already exists.") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise PlatformError("Could not create the account.") from exc
    db.refresh(profile)
    LOGGER.info("Signup profile_id=%s email=%s", profile.ProfileID, clean_email)
    return profile


def upsert_profile(
    db: Session,
    *,
    email: str,
    full_name: str,
    role: str,
    password: str | None = None,
) -> Profile:
    clean_email = _normalize_email(email)
    next_role = normalize_role(role)
    profile = db.execute(select(Profile).where(func.lower(Profile.Email) == clean_email)).scalars().first()
    if not profile:
        profile = Profile(Email=clean_email, FullName=(full_name or clean_email).strip())
        db.add(profile)
    elif full_name:
        profile.FullName = full_name.strip()
    profile.Role = next_role
    if password is not None:
        trimmed = password.strip()
        if len(trimmed) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
        salt = secrets.token_hex(16)
        profile.PasswordSalt = salt
        profile.PasswordHash = _password_hash(trimmed, salt)
    db.commit()
    db.refresh(profile)
    return profile


def authenticate(db: Session, email: str | None, password: str | None) -> Profile:
    clean_email = _normalize_email(email)
    candidate = (password or "").strip()
    profile = db.execute(select(Profile).where(func.lower(Profile.Email) == clean_email)).scalars().first()
    if not profile or not profile.PasswordHash or not profile.PasswordSalt:
        LOGGER.warning("Login failed email=%s reason=unknown_account", clean_email)
        raise NotAuthenticated("Invalid credentials.")
    expected = _password_hash(candidate, profile.PasswordSalt)
    if not hmac.compare_digest(expected, profile.PasswordHash):
        LOGGER.warning("Login failed email=%s reason=invalid_password", clean_email)
        raise NotAuthenticated("Invalid credentials.")
    if normalize_role(profile.Role) == "waiting":
        LOGGER.warning("Login refused email=%s reason=waiting_for_approval", clean_email)
        raise AccessDenied("Account is waiting for approval.")
    LOGGER.info("Login success profile_id=%s role=%s", profile.ProfileID, profile.Role)
    return profile


def list_waiting_profiles(db: Session) -> list[Profile]:
    stmt = (
        select(Profile)
        .where(Profile.Role == "waiting")
        .order_by(Profile.CreatedDate.desc(), Profile.ProfileID.desc())
    )
    return list(db.execute(stmt).scalars().all())


def approve_profile(db: Session, *, actor_role: str, profile_id: int, new_role: str | None) -> Profile:
    target_role = (new_role or "").strip().lower()
    if target_role not in APPROVABLE_ROLES:
        raise ValidationError(f"role must be one of {', '.join(r for r in ROLES if r in APPROVABLE_ROLES)}.")
    if target_role == "admin":
        decision = authorize(actor_role, "grantAdmin")
        if not decision:
            raise AccessDenied(decision.reason)

    profile = db.get(Profile, profile_id)
    if not profile:
        raise NotFoundError("Profile not found", profileID=profile_id)
    profile.Role = target_role
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PlatformError("Could not update the account.") from exc
    db.refresh(profile)
    LOGGER.info("Profile approved profile_id=%s role=%s", profile_id, target_role)
    return profile


def _load_revoked_tokens_unlocked() -> dict[str, float]:
    _ensure_data_dir()
    if not _REVOKED_TOKENS_PATH.exists():
        return {}
    try:
        payload = json.loads(_REVOKED_TOKENS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError, ValueError):
        return {}
    if not isinstance(payload, dict):
        return {}
    out: dict[str, float] = {}
    for token, expires_at in payload.items():
        try:
            out[str(token)] = float(expires_at)
        except (TypeError, ValueError):
            continue
    return out


def _save_revoked_tokens_unlocked(tokens: dict[str, float]) -> None:
    _ensure_data_dir()
    _REVOKED_TOKENS_PATH.write_text(json.dumps(tokens, ensure_ascii=True, indent=2), encoding="utf-8")


def _sign(encoded: str) -> bytes:
    return hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()


def _b64decode(raw: str) -> bytes:
    return base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4))


def create_session(payload: dict[str, Any]) -> str:
    expires_at = time.time() + SESSION_TTL_SECONDS
    session_payload = dict(payload)
    session_payload["expiresAt"] = expires_at
    # Random nonce so two logins in the same second still get distinct tokens.
    session_payload["nonce"] = secrets.token_hex(8)
    body = json.dumps(session_payload, ensure_ascii=True, separators=(",", ":"), default=str).encode("utf-8")
    encoded = base64.urlsafe_b64encode(body).decode("ascii").rstrip("=")
    encoded_sig = base64.urlsafe_b64encode(_sign(encoded)).decode("ascii").rstrip("=")
    token = f"{encoded}.{encoded_sig}"
    with _LOCK:
        _SESSIONS[token] = session_payload
    return token


def get_session(token: str | None) -> dict[str, Any] | None:
    if not token:
        return None
    now = time.time()
    try:
        encoded, encoded_sig = token.split(".", 1)
        if not hmac.compare_digest(_sign(encoded), _b64decode(encoded_sig)):
            return None
        decoded_session = json.loads(_b64decode(encoded).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None

    if not isinstance(decoded_session, dict):
        return None

    expires_at = float(decoded_session.get("expiresAt") or 0.0)
    if now >= expires_at:
        with _LOCK:
            _SESSIONS.pop(token, None)
        return None

    with _LOCK:
        revoked = _load_revoked_tokens_unlocked()
        changed = False
        for revoked_token, revoked_exp in list(revoked.items()):
            if now >= float(revoked_exp):
                revoked.pop(revoked_token, None)
                changed = True
        if changed:
            _save_revoked_tokens_unlocked(revoked)
        if token in revoked:
            _SESSIONS.pop(token, None)
            return None

        _SESSIONS[token] = decoded_session
        return dict(decoded_session)


def remove_session(token: str | None) -> None:
    if not token:
        return
    with _LOCK:
        _SESSIONS.pop(token, None)
        now = time.time()
        revoked = _load_revoked_tokens_unlocked()
        try:
            encoded = token.split(".", 1)[0]
            decoded = json.loads(_b64decode(encoded).decode("utf-8"))
            expires_at = float(decoded.get("expiresAt") or 0.0)
        except (ValueError, UnicodeDecodeError, AttributeError):
            expires_at = now + SESSION_TTL_SECONDS
        if expires_at <= now:
            return
        revoked[token] = expires_at
        _save_revoked_tokens_unlocked(revoked)
