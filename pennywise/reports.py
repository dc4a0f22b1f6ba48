from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from pennywise.dates import month_range, shift_month
from pennywise.db import transactions, users
from pennywise.errors import ExternalServiceError, PennywiseError
from pennywise.notifications import NotificationSender, deliver, render_monthly_report
from pennywise.receipts import GenerativeClient, strip_fences
from pennywise.schemas import TransactionType

ZERO = Decimal("0")

FALLBACK_INSIGHTS = [
    "Your highest expense category this month might need attention.",
    "Consider setting up a budget for better financial management.",
    "Track your recurring expenses to identify potential savings.",
]

logger = structlog.get_logger(__name__)


@dataclass
class MonthlyStats:
    total_income: Decimal = ZERO
    total_expenses: Decimal = ZERO
    transaction_count: int = 0
    by_category: Dict[str, Decimal] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "totalIncome": str(self.total_income),
            "totalExpenses": str(self.total_expenses),
            "transactionCount": self.transaction_count,
            "byCategory": {key: str(value) for key, value in self.by_category.items()},
        }


def get_monthly_stats(engine: Engine, user_id: int, month: date) -> MonthlyStats:
    start, end = month_range(month)
    with engine.begin() as conn:
        rows = conn.execute(
            select(transactions.c.type, transactions.c.amount, transactions.c.category).where(
                transactions.c.user_id == user_id,
                transactions.c.date >= start,
                transactions.c.date < end,
            )
        ).mappings().all()

    stats = MonthlyStats()
    for row in rows:
        amount = _coerce_amount(row["amount"])
        stats.transaction_count += 1
        if row["type"] == TransactionType.EXPENSE:
            stats.total_expenses += amount
            stats.by_category[row["category"]] = stats.by_category.get(row["category"], ZERO) + amount
        else:
            stats.total_income += amount
    return stats


def generate_insights(
    stats: MonthlyStats, month_name: str, client: Optional[GenerativeClient]
) -> List[str]:
    if client is None:
        return list(FALLBACK_INSIGHTS)
    prompt = (
        "Analyze this financial data and provide 3 concise, actionable insights. "
        "Focus on spending patterns and practical advice. Keep it friendly and conversational.\n\n"
        f"Financial data for {month_name}: {json.dumps(stats.as_dict())}\n\n"
        'Format the response as a JSON array of strings, like this: ["insight 1", "insight 2", "insight 3"]'
    )
    try:
        insights = json.loads(strip_fences(client.generate_text(prompt)))
    except (ExternalServiceError, json.JSONDecodeError) as exc:
        logger.warning("insights_unavailable", month=month_name, error=str(exc))
        return list(FALLBACK_INSIGHTS)
    if not isinstance(insights, list) or not all(isinstance(item, str) for item in insights):
        logger.warning("insights_unavailable", month=month_name, error="unexpected shape")
        return list(FALLBACK_INSIGHTS)
    return insights


def send_monthly_reports(
    engine: Engine,
    sender: NotificationSender,
    client: Optional[GenerativeClient] = None,
    today: Optional[date] = None,
) -> int:
    """Send every user a report for the month before ``today``; returns the number delivered."""
    today = today or date.today()
    report_month = shift_month(today, -1)
    month_name = report_month.strftime("%B")

    with engine.begin() as conn:
        user_rows = conn.execute(
            select(users.c.id, users.c.email, users.c.name).order_by(users.c.id)
        ).mappings().all()

    delivered = 0
    for user in user_rows:
        try:
            stats = get_monthly_stats(engine, user["id"], report_month)
        except (PennywiseError, SQLAlchemyError) as exc:
            logger.error("monthly_report_failed", user_id=user["id"], error=str(exc))
            continue
        insights = generate_insights(stats, month_name, client)
        subject, body = render_monthly_report(
            user["name"],
            month_name,
            stats.total_income,
            stats.total_expenses,
            stats.by_category,
            insights,
        )
        if deliver(sender, user["email"], subject, body):
            delivered += 1
    logger.info("monthly_reports_sent", month=month_name, delivered=delivered, users=len(user_rows))
    return delivered


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
