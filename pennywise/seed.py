from __future__ import annotations

import random
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from pennywise.schemas import SeedTransaction, TransactionStatus, TransactionType

SEED_DAYS = 90
INCOME_PROBABILITY = 0.4

CATEGORIES = {
    TransactionType.INCOME: [
        ("salary", (5000, 8000)),
        ("freelance", (1000, 3000)),
        ("investments", (500, 2000)),
        ("other-income", (100, 1000)),
    ],
    TransactionType.EXPENSE: [
        ("housing", (1000, 2000)),
        ("transportation", (100, 500)),
        ("groceries", (200, 600)),
        ("utilities", (100, 300)),
        ("entertainment", (50, 200)),
        ("food", (50, 150)),
        ("shopping", (100, 500)),
        ("healthcare", (100, 1000)),
        ("education", (200, 1000)),
        ("travel", (500, 2000)),
    ],
}


def generate_seed_transactions(
    today: Optional[datetime] = None, rng: Optional[random.Random] = None
) -> List[SeedTransaction]:
    """Build 1-3 random transactions per day for the last 90 days, oldest first."""
    today = today or datetime.now()
    rng = rng or random.Random()
    seeds: List[SeedTransaction] = []
    for days_ago in range(SEED_DAYS, -1, -1):
        day = today - timedelta(days=days_ago)
        for _ in range(rng.randint(1, 3)):
            txn_type = (
                TransactionType.INCOME
                if rng.random() < INCOME_PROBABILITY
                else TransactionType.EXPENSE
            )
            category, (low, high) = rng.choice(CATEGORIES[txn_type])
            amount = Decimal(str(round(rng.uniform(low, high), 2))).quantize(Decimal("0.01"))
            verb = "Received" if txn_type == TransactionType.INCOME else "Paid for"
            seeds.append(
                SeedTransaction(
                    type=txn_type,
                    amount=amount,
                    description=f"{verb} {category}",
                    date=day,
                    category=category,
                    status=TransactionStatus.COMPLETED,
                )
            )
    return seeds
