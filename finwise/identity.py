from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import uuid4

import bcrypt
from sqlalchemy import delete, insert, select
from sqlalchemy.exc import IntegrityError

from finwise.schema import auth_tokens, identities

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL_SECONDS = 7 * 24 * 60 * 60


class IdentityError(RuntimeError):
    """Base class for identity provider failures."""


class InvalidCredentials(IdentityError):
    """Raised when an email/password pair does not match."""


class InvalidToken(IdentityError):
    """Raised when a bearer token is unknown or expired."""


class EmailAlreadyRegistered(IdentityError):
    """Raised when signing up with an email that already has an identity."""


@dataclass(frozen=True)
class Identity:
    uid: str
    email: str
    display_name: str | None = None
    phone: str | None = None


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


@dataclass(frozen=True)
class IdentityProvider:
    """Issues and verifies opaque bearer tokens for stored identities."""

    token_ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS

    def create_user(
        self,
        conn,
        email: str,
        password: str,
        name: str | None = None,
        phone: str | None = None,
    ) -> Identity:
        normalized_email = email.strip().lower()
        existing = conn.execute(
            select(identities.c.uid).where(identities.c.email == normalized_email)
        ).first()
        if existing:
            raise EmailAlreadyRegistered("Email already in use.")
        uid = uuid4().hex
        try:
            conn.execute(
                insert(identities).values(
                    uid=uid,
                    email=normalized_email,
                    hashed_password=hash_password(password),
                    display_name=name,
                    phone=phone,
                )
            )
        except IntegrityError as exc:
            raise EmailAlreadyRegistered("Email already in use.") from exc
        return Identity(uid=uid, email=normalized_email, display_name=name, phone=phone)

    def authenticate(self, conn, email: str, password: str) -> Identity:
        normalized_email = email.strip().lower()
        row = conn.execute(
            select(identities).where(identities.c.email == normalized_email)
        ).mappings().first()
        if not row or not verify_password(password, row["hashed_password"]):
            logger.info("Failed login for %s", normalized_email)
            raise InvalidCredentials("Invalid credentials.")
        return _identity_from_row(row)

    def issue_token(self, conn, uid: str, now: datetime | None = None) -> str:
        now = now or datetime.now()
        token = secrets.token_urlsafe(32)
        conn.execute(
            insert(auth_tokens).values(
                token=token,
                user_id=uid,
                expires_at=now + timedelta(seconds=self.token_ttl_seconds),
                created_at=now,
            )
        )
        return token

    def verify_token(self, conn, token: str, now: datetime | None = None) -> Identity:
        now = now or datetime.now()
        row = conn.execute(
            select(identities, auth_tokens.c.expires_at)
            .select_from(
                auth_tokens.join(identities, auth_tokens.c.user_id == identities.c.uid)
            )
            .where(auth_tokens.c.token == token)
        ).mappings().first()
        if not row:
            raise InvalidToken("Invalid or expired token.")
        if row["expires_at"] <= now:
            raise InvalidToken("Invalid or expired token.")
        return _identity_from_row(row)

    def revoke_token(self, conn, token: str) -> None:
        conn.execute(delete(auth_tokens).where(auth_tokens.c.token == token))

    def delete_user(self, conn, uid: str) -> None:
        conn.execute(delete(auth_tokens).where(auth_tokens.c.user_id == uid))
        conn.execute(delete(identities).where(identities.c.uid == uid))


def _identity_from_row(row) -> Identity:
    return Identity(
        uid=row["uid"],
        email=row["email"],
        display_name=row["display_name"],
        phone=row["phone"],
    )
