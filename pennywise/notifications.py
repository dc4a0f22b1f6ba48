from __future__ import annotations

import smtplib
from dataclasses import dataclass, field
from decimal import Decimal
from email.message import EmailMessage
from typing import Mapping, Protocol, Sequence

import structlog

from pennywise.errors import ExternalServiceError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Notification:
    to_address: str
    subject: str
    body: str


class NotificationSender(Protocol):
    def send(self, to_address: str, subject: str, body: str) -> None:
        """Deliver one message or raise ExternalServiceError."""


@dataclass
class SmtpSender:
    host: str
    port: int = 587
    username: str | None = None
    password: str | None = None
    mail_from: str = "Pennywise <alerts@pennywise.local>"
    timeout: float = 10.0

    def send(self, to_address: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message["From"] = self.mail_from
        message["To"] = to_address
        message["Subject"] = subject
        message.set_content(body)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                smtp.starttls()
                if self.username and self.password:
                    smtp.login(self.username, self.password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise ExternalServiceError(f"Failed to send email to {to_address}") from exc


@dataclass
class LogSender:
    """Records messages and logs them instead of delivering anything."""

    sent: list[Notification] = field(default_factory=list)

    def send(self, to_address: str, subject: str, body: str) -> None:
        self.sent.append(Notification(to_address=to_address, subject=subject, body=body))
        logger.info("notification_logged", to_address=to_address, subject=subject)


def deliver(sender: NotificationSender, to_address: str, subject: str, body: str) -> bool:
    try:
        sender.send(to_address, subject, body)
    except ExternalServiceError as exc:
        logger.warning("notification_failed", to_address=to_address, subject=subject, error=str(exc))
        return False
    return True


def _money(value: Decimal) -> str:
    return f"${value:,.2f}"


def render_budget_alert(
    user_name: str | None,
    account_name: str,
    percentage_used: Decimal,
    budget_amount: Decimal,
    total_expenses: Decimal,
) -> tuple[str, str]:
    subject = f"Budget Alert for {account_name}"
    remaining = budget_amount - total_expenses
    body = "\n".join(
        [
            f"Hello {user_name or 'there'},",
            "",
            f"You have used {percentage_used:.1f}% of your monthly budget for {account_name}.",
            "",
            f"Budget amount: {_money(budget_amount)}",
            f"Spent so far: {_money(total_expenses)}",
            f"Remaining: {_money(remaining)}",
        ]
    )
    return subject, body


def render_monthly_report(
    user_name: str | None,
    month_name: str,
    total_income: Decimal,
    total_expenses: Decimal,
    by_category: Mapping[str, Decimal],
    insights: Sequence[str],
) -> tuple[str, str]:
    subject = f"Your Monthly Financial Report - {month_name}"
    lines = [
        f"Hello {user_name or 'there'},",
        "",
        f"Here is your financial summary for {month_name}.",
        "",
        f"Total income: {_money(total_income)}",
        f"Total expenses: {_money(total_expenses)}",
        f"Net: {_money(total_income - total_expenses)}",
    ]
    if by_category:
        lines.extend(["", "Expenses by category:"])
        for category, amount in sorted(by_category.items(), key=lambda item: item[1], reverse=True):
            lines.append(f"  {category}: {_money(amount)}")
    if insights:
        lines.extend(["", "Insights:"])
        lines.extend(f"  - {insight}" for insight in insights)
    return subject, "\n".join(lines)
