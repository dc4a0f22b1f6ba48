from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Mapping

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from pennywise.dates import advance
from pennywise.db import transactions
from pennywise.errors import StorageError
from pennywise.ledger import create_with_balance
from pennywise.schemas import TransactionStatus

RECURRING_SUFFIX = " (Recurring)"

logger = structlog.get_logger(__name__)

__all__ = [
    "RECURRING_SUFFIX",
    "WorkItem",
    "advance",
    "is_due",
    "materialize",
    "process_one",
    "scan_due",
]


@dataclass(frozen=True)
class WorkItem:
    transaction_id: int
    user_id: int


def is_due(transaction: Mapping, now: datetime) -> bool:
    if not transaction["is_recurring"]:
        return False
    if transaction["last_processed"] is None:
        return True
    next_date = transaction["next_recurring_date"]
    return next_date is not None and next_date <= now


def materialize(transaction: Mapping, now: datetime) -> dict:
    """Build the one-off occurrence for a firing of a recurring transaction."""
    description = transaction["description"] or ""
    return {
        "account_id": transaction["account_id"],
        "type": transaction["type"],
        "amount": transaction["amount"],
        "description": f"{description}{RECURRING_SUFFIX}".strip(),
        "date": now,
        "category": transaction["category"],
        "status": TransactionStatus.COMPLETED,
        "is_recurring": False,
        "recurring_interval": None,
        "next_recurring_date": None,
    }


def scan_due(engine: Engine, now: datetime | None = None) -> list[WorkItem]:
    now = now or datetime.now()
    stmt = (
        select(transactions.c.id, transactions.c.user_id)
        .where(
            transactions.c.is_recurring.is_(True),
            transactions.c.status == TransactionStatus.COMPLETED,
            or_(
                transactions.c.last_processed.is_(None),
                transactions.c.next_recurring_date <= now,
            ),
        )
        .order_by(transactions.c.id)
    )
    try:
        with engine.begin() as conn:
            rows = conn.execute(stmt).all()
    except SQLAlchemyError as exc:
        raise StorageError("Failed to scan recurring transactions.") from exc
    return [WorkItem(transaction_id=row.id, user_id=row.user_id) for row in rows]


def process_one(
    engine: Engine, transaction_id: int, user_id: int, now: datetime | None = None
) -> dict | None:
    """Fire one due recurring transaction.

    The row is re-read first: a stale work item for a transaction that was
    edited, deleted or already advanced is skipped and ``None`` is returned.
    Otherwise the materialized occurrence is returned.

    There is no claim step between the due check and the insert, so two
    concurrent deliveries of the same item can both fire.
    """
    now = now or datetime.now()
    try:
        with engine.begin() as conn:
            original = conn.execute(
                select(transactions).where(
                    transactions.c.id == transaction_id,
                    transactions.c.user_id == user_id,
                )
            ).mappings().first()
            if (
                not original
                or original["status"] != TransactionStatus.COMPLETED
                or not is_due(original, now)
            ):
                logger.info(
                    "recurring_skipped",
                    transaction_id=transaction_id,
                    user_id=user_id,
                    found=original is not None,
                )
                return None

            occurrence = create_with_balance(conn, user_id, materialize(original, now))
            conn.execute(
                update(transactions)
                .where(
                    transactions.c.id == transaction_id,
                    transactions.c.user_id == user_id,
                )
                .values(
                    last_processed=now,
                    next_recurring_date=advance(now, original["recurring_interval"]),
                )
            )
    except SQLAlchemyError as exc:
        raise StorageError("Failed to process recurring transaction.") from exc

    logger.info(
        "recurring_processed",
        transaction_id=transaction_id,
        occurrence_id=occurrence["id"],
        user_id=user_id,
        account_id=occurrence["account_id"],
    )
    return occurrence
