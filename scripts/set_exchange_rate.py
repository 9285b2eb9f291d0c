#!/usr/bin/env python3
"""
Activate a new exchange rate and deactivate the previous ones for the pair.
Usage:
    python scripts/set_exchange_rate.py 1000            # USD -> ARS
    python scripts/set_exchange_rate.py 1000 USD ARS
"""

import asyncio
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy import update

from app.database import AsyncSessionLocal, engine
from app.models import ExchangeRate
from app.services.pricing_service import to_positive_decimal


async def set_exchange_rate(rate: Decimal, from_currency: str = "USD", to_currency: str = "ARS") -> ExchangeRate:
    async with AsyncSessionLocal() as db:
        await db.execute(
            update(ExchangeRate)
            .where(
                ExchangeRate.from_currency == from_currency,
                ExchangeRate.to_currency == to_currency,
                ExchangeRate.is_active == True,
            )
            .values(is_active=False)
        )
        row = ExchangeRate(from_currency=from_currency, to_currency=to_currency, rate=rate, is_active=True)
        db.add(row)
        await db.commit()
        return row


async def _main():
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)
    try:
        rate = to_positive_decimal(Decimal(sys.argv[1]))
    except InvalidOperation:
        rate = None
    if rate is None:
        print(f"Error: rate must be a positive number, got {sys.argv[1]!r}")
        sys.exit(1)

    from_currency = sys.argv[2].upper() if len(sys.argv) > 2 else "USD"
    to_currency = sys.argv[3].upper() if len(sys.argv) > 3 else "ARS"
    try:
        await set_exchange_rate(rate, from_currency, to_currency)
        print(f"Active rate {from_currency}->{to_currency} is now {rate}")
    finally:
        await engine.dispose()


def main():
    asyncio.run(_main())


if __name__ == "__main__":
    main()
