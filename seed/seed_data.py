"""
Seed the database with sample bookings awaiting payment.

Creates:
  - VND orders for the VNPAY / MOMO checkouts
  - USD and JPY orders for STRIPE (two- and zero-decimal currencies)
  - Edge cases: an already-paid order, a cancelled booking

Run:
    python -m seed.seed_data
"""

import asyncio
import sys
from decimal import Decimal
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app.database import async_session, init_db
from app.models.transaction import Order


ORDERS = [
    # Vietnamese customers (VNPAY / MOMO)
    {"id": "O1", "user_id": "U1", "total_amount": Decimal("250000"), "currency": "VND"},
    {"id": "O2", "user_id": "U1", "total_amount": Decimal("1200000"), "currency": "VND"},
    {"id": "O3", "user_id": "U2", "total_amount": Decimal("89000"), "currency": "VND"},
    {"id": "O4", "user_id": "U3", "total_amount": Decimal("4500000"), "currency": "VND"},

    # Card customers (STRIPE)
    {"id": "O10", "user_id": "U4", "total_amount": Decimal("49.90"), "currency": "USD"},
    {"id": "O11", "user_id": "U5", "total_amount": Decimal("12000"), "currency": "JPY"},

    # ─── Edge cases ────────────────────────────────────────────────────

    # Already paid → new attempts are rejected as duplicates
    {"id": "O20", "user_id": "U2", "total_amount": Decimal("300000"), "currency": "VND",
     "payment_status": "PAID", "booking_status": "CONFIRMED"},

    # Cancelled on the booking side → a failed payment must not revive it
    {"id": "O21", "user_id": "U3", "total_amount": Decimal("150000"), "currency": "VND",
     "booking_status": "CANCELLED"},
]


async def seed():
    """Seed the database with sample data."""
    await init_db()

    async with async_session() as session:
        # Check if already seeded
        existing = await session.get(Order, "O1")
        if existing:
            print("Database already seeded. Skipping.")
            return

        for order_data in ORDERS:
            session.add(Order(**order_data))

        await session.commit()
        print(f"Seeded {len(ORDERS)} orders.")


if __name__ == "__main__":
    asyncio.run(seed())
