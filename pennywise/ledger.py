"""Keeps every account balance equal to the signed sum of its transactions.

Balances are never recomputed on the hot path: each operation derives a delta
and applies it with a single ``UPDATE ... SET balance = balance + :delta``
inside the same database transaction as the row change, so concurrent deltas
to one account serialize on the row instead of overwriting each other.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Mapping

import structlog
from sqlalchemy import Table, delete, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from pennywise.dates import advance
from pennywise.db import accounts, transactions
from pennywise.errors import (
    AuthorizationError,
    NotFoundError,
    PennywiseError,
    StorageError,
    ValidationError,
)
from pennywise.schemas import SeedTransaction, TransactionPayload, TransactionType

ZERO = Decimal("0")
RESEED_BATCH_SIZE = 500

logger = structlog.get_logger(__name__)


def signed_amount(amount: Decimal, txn_type: str) -> Decimal:
    value = _coerce_amount(amount)
    return value if txn_type == TransactionType.INCOME else -value


def balance_changes_by_account(rows: Iterable[Mapping]) -> dict[int, Decimal]:
    """Sum the balance reversal of each removed transaction per account."""
    changes: dict[int, Decimal] = defaultdict(lambda: ZERO)
    for row in rows:
        changes[row["account_id"]] -= signed_amount(row["amount"], row["type"])
    return dict(changes)


def increment_balance(conn: Connection, user_id: int, account_id: int, delta: Decimal) -> None:
    result = conn.execute(
        update(accounts)
        .where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        .values(balance=accounts.c.balance + delta)
    )
    if result.rowcount == 0:
        raise NotFoundError("Account not found.")


def create_with_balance(conn: Connection, user_id: int, values: dict) -> dict:
    """Insert one transaction row and apply its delta on an open connection."""
    row = conn.execute(
        insert(transactions)
        .values(user_id=user_id, **values)
        .returning(*transactions.c)
    ).mappings().first()
    if not row:
        raise StorageError("Failed to create transaction.")
    increment_balance(conn, user_id, values["account_id"], signed_amount(values["amount"], values["type"]))
    return dict(row)


def apply_create(engine: Engine, user_id: int, payload: TransactionPayload) -> dict:
    payload = _validated(payload)
    values = _transaction_values(payload)
    try:
        with engine.begin() as conn:
            _require_account(conn, user_id, payload.account_id)
            row = create_with_balance(conn, user_id, values)
    except SQLAlchemyError as exc:
        raise StorageError("Failed to create transaction.") from exc

    logger.info(
        "transaction_created",
        user_id=user_id,
        transaction_id=row["id"],
        account_id=row["account_id"],
        delta=str(signed_amount(row["amount"], row["type"])),
    )
    return row


def apply_update(
    engine: Engine, user_id: int, transaction_id: int, payload: TransactionPayload
) -> dict:
    payload = _validated(payload)
    values = _transaction_values(payload)
    try:
        with engine.begin() as conn:
            original = conn.execute(
                select(transactions.c.type, transactions.c.amount, transactions.c.account_id)
                .where(transactions.c.id == transaction_id, transactions.c.user_id == user_id)
                .with_for_update()
            ).mappings().first()
            if not original:
                raise _missing_or_foreign(conn, transactions, [transaction_id], "Transaction")
            if original["account_id"] != payload.account_id:
                raise ValidationError("Moving a transaction to another account is not supported.")

            delta = signed_amount(payload.amount, payload.type) - signed_amount(
                original["amount"], original["type"]
            )
            row = conn.execute(
                update(transactions)
                .where(transactions.c.id == transaction_id, transactions.c.user_id == user_id)
                .values(**values)
                .returning(*transactions.c)
            ).mappings().first()
            if not row:
                raise NotFoundError("Transaction not found.")
            increment_balance(conn, user_id, original["account_id"], delta)
    except SQLAlchemyError as exc:
        raise StorageError("Failed to update transaction.") from exc

    logger.info(
        "transaction_updated",
        user_id=user_id,
        transaction_id=transaction_id,
        account_id=original["account_id"],
        delta=str(delta),
    )
    return dict(row)


def apply_delete(engine: Engine, user_id: int, transaction_ids: Iterable[int]) -> dict[int, Decimal]:
    """Delete a batch of owned transactions, adjusting each touched account once.

    Returns the balance change applied per account. An empty batch is a no-op.
    """
    ids = list(dict.fromkeys(transaction_ids))
    if not ids:
        return {}

    try:
        with engine.begin() as conn:
            rows = conn.execute(
                select(
                    transactions.c.id,
                    transactions.c.type,
                    transactions.c.amount,
                    transactions.c.account_id,
                ).where(transactions.c.id.in_(ids), transactions.c.user_id == user_id)
            ).mappings().all()
            if len(rows) != len(ids):
                found = {row["id"] for row in rows}
                missing = [txn_id for txn_id in ids if txn_id not in found]
                raise _missing_or_foreign(conn, transactions, missing, "Transaction")

            changes = balance_changes_by_account(rows)
            conn.execute(
                delete(transactions).where(
                    transactions.c.id.in_(ids), transactions.c.user_id == user_id
                )
            )
            for account_id, change in changes.items():
                increment_balance(conn, user_id, account_id, change)
    except SQLAlchemyError as exc:
        raise StorageError("Failed to delete transactions.") from exc

    logger.info(
        "transactions_deleted",
        user_id=user_id,
        count=len(ids),
        accounts=sorted(changes),
    )
    return changes


def reseed(engine: Engine, account_id: int, items: Iterable[SeedTransaction]) -> Decimal:
    """Replace the account's whole history and set its balance from scratch."""
    try:
        seeds = [SeedTransaction.validate_payload(item) for item in items]
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    try:
        with engine.begin() as conn:
            owner_id = conn.execute(
                select(accounts.c.user_id).where(accounts.c.id == account_id)
            ).scalar_one_or_none()
            if owner_id is None:
                raise NotFoundError("Account not found.")

            conn.execute(delete(transactions).where(transactions.c.account_id == account_id))
            rows = [
                {
                    "user_id": owner_id,
                    "account_id": account_id,
                    "type": seed.type,
                    "amount": seed.amount,
                    "description": seed.description,
                    "date": seed.date,
                    "category": seed.category,
                    "status": seed.status,
                    "is_recurring": False,
                }
                for seed in seeds
            ]
            for start in range(0, len(rows), RESEED_BATCH_SIZE):
                conn.execute(insert(transactions), rows[start : start + RESEED_BATCH_SIZE])

            total = sum((signed_amount(seed.amount, seed.type) for seed in seeds), ZERO)
            conn.execute(update(accounts).where(accounts.c.id == account_id).values(balance=total))
    except SQLAlchemyError as exc:
        raise StorageError("Failed to reseed account.") from exc

    logger.info("account_reseeded", account_id=account_id, count=len(seeds), balance=str(total))
    return total


def get_transaction(engine: Engine, user_id: int, transaction_id: int) -> dict:
    with engine.begin() as conn:
        row = conn.execute(
            select(transactions).where(
                transactions.c.id == transaction_id, transactions.c.user_id == user_id
            )
        ).mappings().first()
        if not row:
            raise _missing_or_foreign(conn, transactions, [transaction_id], "Transaction")
    return dict(row)


def list_transactions(
    engine: Engine,
    user_id: int,
    account_id: int | None = None,
    txn_type: str | None = None,
    category: str | None = None,
    is_recurring: bool | None = None,
) -> list[dict]:
    stmt = select(transactions).where(transactions.c.user_id == user_id)
    if account_id is not None:
        stmt = stmt.where(transactions.c.account_id == account_id)
    if txn_type is not None:
        try:
            stmt = stmt.where(transactions.c.type == TransactionType.validate(txn_type))
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
    if category is not None:
        stmt = stmt.where(transactions.c.category == category)
    if is_recurring is not None:
        stmt = stmt.where(transactions.c.is_recurring == is_recurring)
    stmt = stmt.order_by(transactions.c.date.desc(), transactions.c.id.desc())
    with engine.begin() as conn:
        rows = conn.execute(stmt).mappings().all()
    return [dict(row) for row in rows]


def _require_account(conn: Connection, user_id: int, account_id: int) -> None:
    account_exists = conn.execute(
        select(accounts.c.id).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
    ).first()
    if not account_exists:
        raise _missing_or_foreign(conn, accounts, [account_id], "Account")


def _missing_or_foreign(
    conn: Connection, table: Table, ids: list[int], label: str
) -> PennywiseError:
    """Tell rows that do not exist apart from rows owned by another user."""
    owned_elsewhere = conn.execute(select(table.c.id).where(table.c.id.in_(ids)).limit(1)).first()
    if owned_elsewhere:
        return AuthorizationError(f"{label} not owned by user.")
    return NotFoundError(f"{label} not found.")


def _validated(payload: TransactionPayload) -> TransactionPayload:
    try:
        return TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def _transaction_values(payload: TransactionPayload) -> dict:
    next_recurring_date: datetime | None = None
    if payload.is_recurring:
        next_recurring_date = advance(payload.date, payload.recurring_interval)
    return {
        "account_id": payload.account_id,
        "type": payload.type,
        "amount": payload.amount,
        "description": payload.description,
        "date": payload.date,
        "category": payload.category,
        "receipt_url": payload.receipt_url,
        "status": payload.status,
        "is_recurring": payload.is_recurring,
        "recurring_interval": payload.recurring_interval,
        "next_recurring_date": next_recurring_date,
    }


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
