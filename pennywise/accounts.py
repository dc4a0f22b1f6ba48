from __future__ import annotations

from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy import func, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from pennywise.db import accounts, transactions
from pennywise.errors import NotFoundError, StorageError, ValidationError
from pennywise.ledger import create_with_balance
from pennywise.schemas import AccountPayload, TransactionStatus, TransactionType

OPENING_BALANCE_CATEGORY = "opening-balance"

logger = structlog.get_logger(__name__)


def _clear_default(conn: Connection, user_id: int) -> None:
    conn.execute(
        update(accounts)
        .where(accounts.c.user_id == user_id, accounts.c.is_default.is_(True))
        .values(is_default=False)
    )


def create_account(engine: Engine, user_id: int, payload: AccountPayload) -> dict:
    """Create an account; a user's first account always becomes the default.

    A non-zero opening balance is booked as an INCOME or EXPENSE transaction so
    the stored balance stays equal to the ledger sum.
    """
    try:
        payload = AccountPayload.validate_payload(payload)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    try:
        with engine.begin() as conn:
            existing = conn.execute(
                select(accounts.c.id).where(accounts.c.user_id == user_id).limit(1)
            ).first()
            is_default = True if not existing else payload.is_default
            if is_default:
                _clear_default(conn, user_id)
            account_id = conn.execute(
                insert(accounts)
                .values(
                    user_id=user_id,
                    name=payload.name,
                    type=payload.type,
                    is_default=is_default,
                )
                .returning(accounts.c.id)
            ).scalar_one()
            if payload.balance != 0:
                create_with_balance(conn, user_id, _opening_values(account_id, payload.balance))
            row = conn.execute(select(accounts).where(accounts.c.id == account_id)).mappings().first()
    except SQLAlchemyError as exc:
        raise StorageError("Failed to create account.") from exc

    if not row:
        raise StorageError("Failed to create account.")
    logger.info("account_created", user_id=user_id, account_id=row["id"], is_default=is_default)
    return dict(row)


def set_default_account(engine: Engine, user_id: int, account_id: int) -> dict:
    try:
        with engine.begin() as conn:
            owned = conn.execute(
                select(accounts.c.id).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
            ).first()
            if not owned:
                raise NotFoundError("Account not found.")
            _clear_default(conn, user_id)
            row = conn.execute(
                update(accounts)
                .where(accounts.c.id == account_id, accounts.c.user_id == user_id)
                .values(is_default=True)
                .returning(*accounts.c)
            ).mappings().first()
    except SQLAlchemyError as exc:
        raise StorageError("Failed to update default account.") from exc
    return dict(row)


def list_accounts(engine: Engine, user_id: int) -> list[dict]:
    counts = (
        select(transactions.c.account_id, func.count(transactions.c.id).label("transaction_count"))
        .where(transactions.c.user_id == user_id)
        .group_by(transactions.c.account_id)
        .subquery()
    )
    stmt = (
        select(accounts, func.coalesce(counts.c.transaction_count, 0).label("transaction_count"))
        .outerjoin(counts, counts.c.account_id == accounts.c.id)
        .where(accounts.c.user_id == user_id)
        .order_by(accounts.c.created_at.desc(), accounts.c.id.desc())
    )
    with engine.begin() as conn:
        rows = conn.execute(stmt).mappings().all()
    return [dict(row) for row in rows]


def get_account_with_transactions(engine: Engine, user_id: int, account_id: int) -> dict:
    with engine.begin() as conn:
        account = conn.execute(
            select(accounts).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        ).mappings().first()
        if not account:
            raise NotFoundError("Account not found.")
        rows = conn.execute(
            select(transactions)
            .where(transactions.c.account_id == account_id, transactions.c.user_id == user_id)
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
        ).mappings().all()
    result = dict(account)
    result["transactions"] = [dict(row) for row in rows]
    result["transaction_count"] = len(rows)
    return result


def _opening_values(account_id: int, balance: Decimal) -> dict:
    return {
        "account_id": account_id,
        "type": TransactionType.INCOME if balance > 0 else TransactionType.EXPENSE,
        "amount": abs(balance),
        "description": "Opening balance",
        "date": datetime.now(),
        "category": OPENING_BALANCE_CATEGORY,
        "status": TransactionStatus.COMPLETED,
        "is_recurring": False,
    }
