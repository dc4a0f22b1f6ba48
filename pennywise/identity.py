from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from pennywise.db import users
from pennywise.errors import AuthorizationError, StorageError, ValidationError
from pennywise.schemas import UserSyncPayload

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CurrentUser:
    id: int
    email: str
    name: str | None = None


def get_current_user(engine: Engine, x_user_id: str | None) -> CurrentUser:
    if not x_user_id:
        raise AuthorizationError("Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise AuthorizationError("Invalid user identity.") from exc
    with engine.begin() as conn:
        row = conn.execute(
            select(users.c.id, users.c.email, users.c.name).where(users.c.id == user_id)
        ).mappings().first()
    if not row:
        raise AuthorizationError("User not found.")
    return CurrentUser(id=row["id"], email=row["email"], name=row["name"])


def sync_user(engine: Engine, payload: UserSyncPayload) -> dict:
    """Upsert the local user row for an identity-provider subject.

    Looks the user up by external id first, then links an existing row with the
    same email, and only then inserts a new user.
    """
    external_id = payload.external_id.strip()
    email = payload.email.strip().lower()
    name = payload.name.strip() if payload.name else None
    if not external_id or not email:
        raise ValidationError("External id and email required.")

    try:
        with engine.begin() as conn:
            row = conn.execute(
                select(users).where(users.c.external_id == external_id)
            ).mappings().first()
            if row:
                return dict(row)

            by_email = conn.execute(select(users.c.id).where(users.c.email == email)).first()
            if by_email:
                stmt = (
                    update(users)
                    .where(users.c.id == by_email.id)
                    .values(external_id=external_id, name=name)
                )
                event = "user_linked"
            else:
                stmt = insert(users).values(external_id=external_id, email=email, name=name)
                event = "user_created"
            row = conn.execute(stmt.returning(*users.c)).mappings().first()
    except IntegrityError as exc:
        raise ValidationError("User already exists.") from exc
    except SQLAlchemyError as exc:
        raise StorageError("Failed to sync user.") from exc

    if not row:
        raise StorageError("Failed to sync user.")
    logger.info(event, user_id=row["id"])
    return dict(row)
