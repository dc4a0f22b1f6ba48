from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

import structlog
from sqlalchemy import func, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from pennywise.dates import month_range
from pennywise.db import accounts, budgets, transactions, users
from pennywise.errors import NotFoundError, PennywiseError, StorageError, ValidationError
from pennywise.notifications import NotificationSender, deliver, render_budget_alert
from pennywise.schemas import TransactionType

ZERO = Decimal("0")
HUNDRED = Decimal("100")
ALERT_THRESHOLD = Decimal("80")

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BudgetAlert:
    budget_id: int
    user_id: int
    account_id: int
    percentage_used: Decimal
    total_expenses: Decimal
    delivered: bool


def percentage_used(total_expenses: Decimal, budget_amount: Decimal) -> Decimal:
    if budget_amount <= ZERO:
        raise ValueError("budget_amount must be greater than zero.")
    return _coerce_amount(total_expenses) / _coerce_amount(budget_amount) * HUNDRED


def is_new_month(last_alert_sent: Optional[datetime], now: datetime) -> bool:
    if last_alert_sent is None:
        return True
    return (last_alert_sent.year, last_alert_sent.month) < (now.year, now.month)


def should_alert(
    percentage: Decimal,
    last_alert_sent: Optional[datetime],
    now: datetime,
    threshold: Decimal = ALERT_THRESHOLD,
) -> bool:
    return percentage >= threshold and is_new_month(last_alert_sent, now)


def month_expenses(conn: Connection, user_id: int, account_id: int, now: datetime) -> Decimal:
    start, end = month_range(now)
    total = conn.execute(
        select(func.coalesce(func.sum(transactions.c.amount), 0)).where(
            transactions.c.user_id == user_id,
            transactions.c.account_id == account_id,
            transactions.c.type == TransactionType.EXPENSE,
            transactions.c.date >= start,
            transactions.c.date < end,
        )
    ).scalar_one()
    return _coerce_amount(total)


def get_current_budget(
    engine: Engine, user_id: int, account_id: int, now: Optional[datetime] = None
) -> tuple[Optional[dict], Decimal]:
    now = now or datetime.now()
    with engine.begin() as conn:
        account_exists = conn.execute(
            select(accounts.c.id).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        ).first()
        if not account_exists:
            raise NotFoundError("Account not found.")
        budget = conn.execute(select(budgets).where(budgets.c.user_id == user_id)).mappings().first()
        expenses = month_expenses(conn, user_id, account_id, now)
    return (dict(budget) if budget else None), expenses


def set_budget(engine: Engine, user_id: int, amount: Decimal) -> dict:
    amount = _coerce_amount(amount)
    if not amount.is_finite() or amount <= ZERO:
        raise ValidationError("Budget amount must be greater than zero.")
    try:
        with engine.begin() as conn:
            existing = conn.execute(
                select(budgets.c.id).where(budgets.c.user_id == user_id)
            ).first()
            if existing:
                stmt = update(budgets).where(budgets.c.user_id == user_id).values(amount=amount)
            else:
                stmt = insert(budgets).values(user_id=user_id, amount=amount)
            row = conn.execute(stmt.returning(*budgets.c)).mappings().first()
    except SQLAlchemyError as exc:
        raise StorageError("Failed to save budget.") from exc
    if not row:
        raise StorageError("Failed to save budget.")
    return dict(row)


def check_budget_alerts(
    engine: Engine,
    sender: NotificationSender,
    now: Optional[datetime] = None,
    threshold: Decimal = ALERT_THRESHOLD,
) -> List[BudgetAlert]:
    """Evaluate every budget and alert at most once per calendar month.

    Each budget is an independent unit of work; one failing budget is logged
    and the sweep moves on.
    """
    now = now or datetime.now()
    with engine.begin() as conn:
        rows = conn.execute(
            select(
                budgets.c.id,
                budgets.c.user_id,
                budgets.c.amount,
                budgets.c.last_alert_sent,
                users.c.email,
                users.c.name,
            ).join(users, users.c.id == budgets.c.user_id)
        ).mappings().all()

    alerts: List[BudgetAlert] = []
    for row in rows:
        try:
            alert = _evaluate_budget(engine, sender, row, now, threshold)
        except (PennywiseError, SQLAlchemyError, ValueError) as exc:
            logger.error("budget_alert_failed", budget_id=row["id"], error=str(exc))
            continue
        if alert:
            alerts.append(alert)
    return alerts


def _evaluate_budget(
    engine: Engine,
    sender: NotificationSender,
    budget: dict,
    now: datetime,
    threshold: Decimal,
) -> Optional[BudgetAlert]:
    user_id = budget["user_id"]
    with engine.begin() as conn:
        default_account = conn.execute(
            select(accounts.c.id, accounts.c.name).where(
                accounts.c.user_id == user_id, accounts.c.is_default.is_(True)
            )
        ).mappings().first()
        if not default_account:
            return None
        total_expenses = month_expenses(conn, user_id, default_account["id"], now)

    percentage = percentage_used(total_expenses, budget["amount"])
    if not should_alert(percentage, budget["last_alert_sent"], now, threshold):
        return None

    subject, body = render_budget_alert(
        budget["name"],
        default_account["name"],
        percentage,
        _coerce_amount(budget["amount"]),
        total_expenses,
    )
    delivered = deliver(sender, budget["email"], subject, body)

    # recorded even when delivery failed
    with engine.begin() as conn:
        conn.execute(
            update(budgets)
            .where(budgets.c.id == budget["id"], budgets.c.user_id == user_id)
            .values(last_alert_sent=now)
        )

    logger.info(
        "budget_alert_sent",
        budget_id=budget["id"],
        user_id=user_id,
        percentage_used=f"{percentage:.2f}",
        delivered=delivered,
    )
    return BudgetAlert(
        budget_id=budget["id"],
        user_id=user_id,
        account_id=default_account["id"],
        percentage_used=percentage,
        total_expenses=total_expenses,
        delivered=delivered,
    )


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
