#!/usr/bin/env python3
"""
Xeno CRM Sample Data Generator
Wipes customers, orders and campaigns, then fills the database with
random customers and order history for trying out segments.

Features:
- Reproducible with --seed
- Dry-run mode (prints what would be generated)
- Customer spend / visits derived from orders, not invented
"""

import argparse
import logging
import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Tuple

from tqdm import tqdm

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from xenocrm.models import Customer, Order

FIRST_NAMES = ['Rajesh', 'Priya', 'Amit', 'Sneha', 'Vikram', 'Anita', 'Rohit', 'Kavya']

ORDERS_PER_CUSTOMER = (1, 10)
AMOUNT_RANGE = (500, 10500)
COMPLETED_SHARE = 0.9
HISTORY_DAYS = 365


def make_customer(i: int, rng: random.Random) -> Customer:
    return Customer(
        name=f"{rng.choice(FIRST_NAMES)} {i}",
        email=f"customer{i}@example.com",
        phone=f"+91{rng.randint(1000000000, 9999999999)}",
    )


def make_orders(customer_id: int, rng: random.Random, now: datetime) -> List[Order]:
    """1-10 orders spread over the last year, roughly 90% completed."""
    return [
        Order(
            customer_id=customer_id,
            amount=round(rng.uniform(*AMOUNT_RANGE), 2),
            order_date=now - timedelta(seconds=rng.uniform(0, HISTORY_DAYS * 86400)),
            status='completed' if rng.random() < COMPLETED_SHARE else 'pending',
        )
        for _ in range(rng.randint(*ORDERS_PER_CUSTOMER))
    ]


def clear_data() -> None:
    """Remove every campaign, order and customer and reset the id sequences."""
    from xenocrm.db.connection import get_db_cursor

    with get_db_cursor(dict_cursor=False) as cur:
        cur.execute("TRUNCATE message_logs, campaigns, orders, customers RESTART IDENTITY CASCADE")
    logging.info("Cleared customers, orders and campaigns")


def generate(n_customers: int, seed=None, dry_run: bool = False) -> Tuple[int, int]:
    """
    Generate `n_customers` customers with random orders.
    Returns: (customers created, orders created)
    """
    rng = random.Random(seed)
    now = datetime.now(timezone.utc)

    if dry_run:
        n_orders = 0
        for i in range(1, n_customers + 1):
            customer = make_customer(i, rng)
            orders = make_orders(i, rng, now)
            n_orders += len(orders)
            logging.info(f"[DRY-RUN] {customer.name} <{customer.email}>: {len(orders)} orders, "
                         f"{sum(o.amount for o in orders if o.status == 'completed'):.2f} completed spend")
        return n_customers, n_orders

    from xenocrm.engine import crm

    clear_data()

    orders: List[Order] = []
    for i in tqdm(range(1, n_customers + 1), desc="Customers", unit="customer"):
        customer_id = crm.create_customer(make_customer(i, rng))
        orders.extend(make_orders(customer_id, rng, now))

    # Spend, visit count and last visit are recomputed per customer here
    crm.bulk_record_orders(orders)
    return n_customers, len(orders)


def main():
    parser = argparse.ArgumentParser(
        description="Replace the Xeno CRM database contents with sample customers and orders"
    )
    parser.add_argument('--customers', type=int, default=100, help="Number of customers (default: 100)")
    parser.add_argument('--seed', type=int, default=None, help="Random seed for reproducible data")
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help="Show what would be generated without touching the database"
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    try:
        customers, orders = generate(args.customers, seed=args.seed, dry_run=args.dry_run)
    except Exception as e:
        logging.error(f"Sample data generation failed: {e}", exc_info=True)
        sys.exit(1)

    logging.info(f"{'Would create' if args.dry_run else 'Created'} {customers} customers and {orders} orders")
    sys.exit(0)


if __name__ == "__main__":
    main()
