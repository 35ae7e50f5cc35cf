"""
Ingest - Bulk customer and order import from plain records.
Records are dicts as they come out of JSON, CSV or spreadsheet rows.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List

from xenocrm.engine import crm
from xenocrm.logging_config import log_call
from xenocrm.models import Customer, Order, ORDER_STATUSES

logger = logging.getLogger(__name__)


def _blank(value: Any) -> bool:
    # NaN != NaN covers pandas' missing cells
    return value is None or value == '' or value != value


def _parse_datetime(value: Any):
    if _blank(value):
        return None
    if isinstance(value, datetime):
        ts = value
    elif hasattr(value, 'to_pydatetime'):
        ts = value.to_pydatetime()
    else:
        ts = datetime.fromisoformat(str(value).strip().replace('Z', '+00:00'))
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def customer_from_record(record: Dict[str, Any]) -> Customer:
    """Build a Customer from an import record. name and email are required."""
    name = record.get('name')
    email = record.get('email')
    if _blank(name) or _blank(email):
        raise ValueError(f"Customer record needs name and email: {record!r}")

    return Customer(
        name=str(name).strip(),
        email=str(email).strip().lower(),
        phone=None if _blank(record.get('phone')) else str(record['phone']).strip(),
        total_spend=0 if _blank(record.get('total_spend')) else float(record['total_spend']),
        visit_count=0 if _blank(record.get('visit_count')) else int(record['visit_count']),
        last_visit=_parse_datetime(record.get('last_visit')),
    )


def order_from_record(record: Dict[str, Any]) -> Order:
    """Build an Order from an import record. customer_id and amount are required."""
    if _blank(record.get('customer_id')) or _blank(record.get('amount')):
        raise ValueError(f"Order record needs customer_id and amount: {record!r}")

    status = 'completed' if _blank(record.get('status')) else str(record['status']).strip().lower()
    if status not in ORDER_STATUSES:
        raise ValueError(f"Invalid order status {status!r}")
    amount = float(record['amount'])
    if amount < 0:
        raise ValueError(f"Order amount must be non-negative, got {amount}")

    return Order(
        customer_id=int(record['customer_id']),
        amount=amount,
        order_date=_parse_datetime(record.get('order_date')),
        status=status,
    )


@log_call
def import_customers(records: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Import customers with partial-success semantics: invalid records and
    duplicate emails are skipped, everything else is inserted.
    Returns: {'inserted', 'skipped', 'duplicates', 'invalid'}
    """
    customers: List[Customer] = []
    invalid = 0
    for record in records:
        try:
            customers.append(customer_from_record(record))
        except (TypeError, ValueError) as e:
            logger.warning(f"import_customers: skipping invalid record: {e}")
            invalid += 1

    result = crm.bulk_create_customers(customers)
    result['invalid'] = invalid
    result['skipped'] += invalid
    return result


@log_call
def import_orders(records: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Import orders in one batch; invalid records are skipped.
    Returns: {'inserted', 'invalid'}
    """
    orders: List[Order] = []
    invalid = 0
    for record in records:
        try:
            orders.append(order_from_record(record))
        except (TypeError, ValueError) as e:
            logger.warning(f"import_orders: skipping invalid record: {e}")
            invalid += 1

    inserted = crm.bulk_record_orders(orders)
    return {'inserted': inserted, 'invalid': invalid}
