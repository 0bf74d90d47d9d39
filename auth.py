"""
auth.py
Staff accounts: bcrypt hashing, verify, login, change password, user management.

Uses bcrypt directly; hashes are stored as UTF-8 strings in system_users.
"""

from __future__ import annotations

import logging
import sqlite3

import bcrypt

import db
from errors import AuthenticationError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

ROLES = ("admin", "staff")
MIN_PASSWORD_LENGTH = 6


def _to_bcrypt_secret(password: str) -> bytes:
    """
    bcrypt only uses the first 72 BYTES of the password.
    We truncate to 72 bytes to avoid ValueError and to make behavior explicit.
    """
    pw = password.encode("utf-8")
    if len(pw) > 72:
        pw = pw[:72]
    return pw


def hash_password(password: str) -> str:
    """
    Returns a bcrypt hash as a UTF-8 string (stored in SQLite).
    """
    secret = _to_bcrypt_secret(password)
    salt = bcrypt.gensalt(rounds=12)
    hashed = bcrypt.hashpw(secret, salt)
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    secret = _to_bcrypt_secret(password)
    stored = password_hash.encode("utf-8")
    return bcrypt.checkpw(secret, stored)


def get_user_by_email(email: str):
    return db.fetch_one("SELECT * FROM system_users WHERE email = ?", (email.strip().lower(),))


def login(email: str, password: str):
    """Return the user row, or raise AuthenticationError."""
    user = get_user_by_email(email)
    if not user or not verify_password(password, user["password_hash"]):
        logger.warning("Failed login for %s", email)
        raise AuthenticationError("Invalid email or password.")
    return user


def _check_password(new_password: str) -> None:
    if len(new_password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")


def change_password(email: str, new_password: str) -> None:
    _check_password(new_password)
    changed = db.update(
        "UPDATE system_users SET password_hash = ? WHERE email = ?",
        (hash_password(new_password), email.strip().lower()),
    )
    if not changed:
        raise AuthenticationError("Unknown user.")
    db.clear_force_password_change()


def list_users():
    return db.fetch_all("SELECT id, name, email, role, created_at FROM system_users ORDER BY id")


def add_user(name: str, email: str, password: str, role: str = "staff") -> int:
    if not name.strip() or "@" not in email:
        raise ValidationError("Name and a valid email are required.")
    if role not in ROLES:
        raise ValidationError("Role must be admin or staff.")
    _check_password(password)
    try:
        return db.execute(
            "INSERT INTO system_users(name, email, password_hash, role, created_at) VALUES(?,?,?,?,?)",
            (name.strip(), email.strip().lower(), hash_password(password), role, db.now_iso()),
        )
    except sqlite3.IntegrityError as exc:
        raise ValidationError("A user with this email already exists.") from exc


def _is_last_admin(user_id: int) -> bool:
    user = db.fetch_one("SELECT role FROM system_users WHERE id = ?", (user_id,))
    if not user:
        raise NotFoundError("user", user_id)
    admins = db.fetch_one("SELECT COUNT(*) AS c FROM system_users WHERE role = 'admin'")["c"]
    return user["role"] == "admin" and admins <= 1


def edit_user(user_id: int, name: str, role: str) -> None:
    """Change a user's display name and role."""
    if not name.strip():
        raise ValidationError("Name is required.")
    if role not in ROLES:
        raise ValidationError("Role must be admin or staff.")
    if role != "admin" and _is_last_admin(user_id):
        raise ValidationError("Cannot demote the last admin.")
    if not db.update("UPDATE system_users SET name = ?, role = ? WHERE id = ?", (name.strip(), role, user_id)):
        raise NotFoundError("user", user_id)


def delete_user(user_id: int) -> None:
    if _is_last_admin(user_id):
        raise ValidationError("Cannot delete the last admin.")
    db.update("DELETE FROM system_users WHERE id = ?", (user_id,))
