"""
CRM Engine - Core Database Operations
Pure Python module with no AI dependency. Owns every SQL statement for
customers, orders, campaigns and message logs.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from psycopg2.errors import UniqueViolation
from psycopg2.extras import Json, execute_values

from xenocrm.db.connection import get_db_cursor
from xenocrm.errors import DuplicateCustomer
from xenocrm.models import (
    Campaign, CampaignStats, Customer, MessageLog, Order, PendingDelivery,
    LOG_PENDING, ORDER_STATUSES,
)
from xenocrm.bus.events import bus, EVENT_CUSTOMER_CREATED, EVENT_ORDER_RECORDED

logger = logging.getLogger(__name__)

_CUSTOMER_COLUMNS = "id, name, email, phone, total_spend, visit_count, last_visit, created_at, updated_at"


# =============================================================================
# CUSTOMER OPERATIONS
# =============================================================================

def create_customer(customer: Customer) -> int:
    """
    Create a new customer.
    Returns: customer_id
    Raises: DuplicateCustomer if the email is already taken
    """
    email = (customer.email or '').strip().lower()
    params = {
        'name': customer.name.strip(),
        'email': email,
        'phone': customer.phone,
        'total_spend': customer.total_spend or 0,
        'visit_count': customer.visit_count or 0,
        'last_visit': customer.last_visit,
    }

    try:
        with get_db_cursor() as cur:
            cur.execute("""
                INSERT INTO customers (
                    name, email, phone, total_spend, visit_count, last_visit, created_at, updated_at
                ) VALUES (
                    %(name)s, %(email)s, %(phone)s, %(total_spend)s, %(visit_count)s,
                    COALESCE(%(last_visit)s, NOW()), NOW(), NOW()
                ) RETURNING id
            """, params)
            customer_id = cur.fetchone()['id']
    except UniqueViolation:
        raise DuplicateCustomer(email)

    logger.info(f"Created customer ID {customer_id}: {params['name']}")
    bus.emit(EVENT_CUSTOMER_CREATED, {'customer_id': customer_id, 'email': email})
    return customer_id


def bulk_create_customers(customers: List[Customer]) -> Dict[str, Any]:
    """
    Insert many customers. Each record is its own transaction, so a duplicate
    skips only that record.
    Returns: {'inserted': n, 'skipped': n, 'duplicates': [emails]}
    """
    inserted = 0
    duplicates = []
    for customer in customers:
        try:
            create_customer(customer)
            inserted += 1
        except DuplicateCustomer as e:
            logger.warning(f"bulk_create_customers: skipping duplicate {e.email}")
            duplicates.append(e.email)

    logger.info(f"bulk_create_customers: {inserted} inserted, {len(duplicates)} duplicates skipped")
    return {'inserted': inserted, 'skipped': len(duplicates), 'duplicates': duplicates}


def get_customer(customer_id: int) -> Optional[Customer]:
    """Get customer by ID."""
    with get_db_cursor() as cur:
        cur.execute(f"SELECT {_CUSTOMER_COLUMNS} FROM customers WHERE id = %s", (customer_id,))
        row = cur.fetchone()
        if row:
            return Customer(**row)
        logger.debug(f"get_customer: customer_id={customer_id} not found")
        return None


def list_customers(
    min_spend: Optional[float] = None,
    max_spend: Optional[float] = None,
    min_visits: Optional[int] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[Customer], int]:
    """
    Page through customers with optional filters, newest first.
    Returns: (customers on this page, total matching)
    """
    conditions = ["TRUE"]
    params: Dict[str, Any] = {}

    if min_spend is not None:
        conditions.append("total_spend >= %(min_spend)s")
        params['min_spend'] = min_spend

    if max_spend is not None:
        conditions.append("total_spend <= %(max_spend)s")
        params['max_spend'] = max_spend

    if min_visits is not None:
        conditions.append("visit_count >= %(min_visits)s")
        params['min_visits'] = min_visits

    where_clause = " AND ".join(conditions)

    with get_db_cursor() as cur:
        cur.execute(f"SELECT COUNT(*) AS n FROM customers WHERE {where_clause}", params)
        total = cur.fetchone()['n']

        cur.execute(f"""
            SELECT {_CUSTOMER_COLUMNS} FROM customers
            WHERE {where_clause}
            ORDER BY created_at DESC, id DESC
            LIMIT %(limit)s OFFSET %(offset)s
        """, {**params, 'limit': limit, 'offset': offset})
        rows = cur.fetchall()

    logger.debug(f"list_customers: {len(rows)} of {total} (min_spend={min_spend}, max_spend={max_spend}, min_visits={min_visits})")
    return [Customer(**row) for row in rows], total


def find_customers_where(where_clause: str, params: Dict[str, Any]) -> List[Customer]:
    """
    All customers matching a compiled segmentation WHERE clause.
    where_clause must come from segmentation.to_sql, never from user input.
    """
    with get_db_cursor() as cur:
        cur.execute(f"""
            SELECT {_CUSTOMER_COLUMNS} FROM customers
            WHERE {where_clause}
            ORDER BY id
        """, params)
        return [Customer(**row) for row in cur.fetchall()]


def count_customers_where(where_clause: str, params: Dict[str, Any]) -> int:
    """Count of customers matching a compiled segmentation WHERE clause."""
    with get_db_cursor() as cur:
        cur.execute(f"SELECT COUNT(*) AS n FROM customers WHERE {where_clause}", params)
        return cur.fetchone()['n']


# =============================================================================
# ORDER OPERATIONS
# =============================================================================

def _validate_order(order: Order) -> None:
    if order.status not in ORDER_STATUSES:
        raise ValueError(f"Invalid order status {order.status!r}. Choose from: {', '.join(ORDER_STATUSES)}")
    if order.amount is None or order.amount < 0:
        raise ValueError(f"Order amount must be non-negative, got {order.amount!r}")


def record_order(order: Order) -> int:
    """
    Insert an order and refresh the customer's aggregates.
    Returns: order_id
    """
    _validate_order(order)

    if not get_customer(order.customer_id):
        raise ValueError(f"Customer {order.customer_id} not found")

    with get_db_cursor() as cur:
        cur.execute("""
            INSERT INTO orders (customer_id, amount, order_date, status, created_at)
            VALUES (%(customer_id)s, %(amount)s, COALESCE(%(order_date)s, NOW()), %(status)s, NOW())
            RETURNING id
        """, {
            'customer_id': order.customer_id,
            'amount': order.amount,
            'order_date': order.order_date,
            'status': order.status,
        })
        order_id = cur.fetchone()['id']

    refresh_customer_stats(order.customer_id)

    logger.info(f"Recorded order ID {order_id} for customer {order.customer_id}: {order.amount}")
    bus.emit(EVENT_ORDER_RECORDED, {'order_id': order_id, 'customer_id': order.customer_id})
    return order_id


def bulk_record_orders(orders: List[Order]) -> int:
    """
    Insert many orders in one transaction, then refresh each affected customer.
    Returns: number of orders inserted
    """
    if not orders:
        return 0

    for order in orders:
        _validate_order(order)

    rows = [(o.customer_id, o.amount, o.order_date, o.status) for o in orders]
    with get_db_cursor() as cur:
        execute_values(cur, """
            INSERT INTO orders (customer_id, amount, order_date, status)
            VALUES %s
        """, rows, template="(%s, %s, COALESCE(%s, NOW()), %s)")

    customer_ids = sorted({o.customer_id for o in orders})
    for customer_id in customer_ids:
        refresh_customer_stats(customer_id)

    logger.info(f"bulk_record_orders: {len(orders)} orders for {len(customer_ids)} customers")
    return len(orders)


def list_orders(
    customer_id: Optional[int] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[Dict[str, Any]], int]:
    """
    Page through orders, most recent order_date first, optionally for one customer.
    Rows are plain dicts: Order fields plus customer_name, customer_email.
    Returns: (orders on this page, total matching)
    """
    conditions = ["TRUE"]
    params: Dict[str, Any] = {}

    if customer_id is not None:
        conditions.append("o.customer_id = %(customer_id)s")
        params['customer_id'] = customer_id

    where_clause = " AND ".join(conditions)

    with get_db_cursor() as cur:
        cur.execute(f"SELECT COUNT(*) AS n FROM orders o WHERE {where_clause}", params)
        total = cur.fetchone()['n']

        cur.execute(f"""
            SELECT o.id, o.customer_id, o.amount, o.order_date, o.status, o.created_at,
                   c.name AS customer_name, c.email AS customer_email
            FROM orders o
            JOIN customers c ON c.id = o.customer_id
            WHERE {where_clause}
            ORDER BY o.order_date DESC, o.id DESC
            LIMIT %(limit)s OFFSET %(offset)s
        """, {**params, 'limit': limit, 'offset': offset})
        rows = cur.fetchall()

    logger.debug(f"list_orders: {len(rows)} of {total} (customer_id={customer_id})")
    return [dict(row) for row in rows], total


def refresh_customer_stats(customer_id: int) -> bool:
    """
    Recompute total_spend, visit_count and last_visit from the customer's
    non-cancelled orders. last_visit is left alone when there are none.
    Returns: True if the customer exists
    """
    with get_db_cursor() as cur:
        cur.execute("""
            UPDATE customers c
            SET total_spend = COALESCE(s.total, 0),
                visit_count = s.visits,
                last_visit  = COALESCE(s.latest, c.last_visit),
                updated_at  = NOW()
            FROM (
                SELECT SUM(amount) AS total, COUNT(*) AS visits, MAX(order_date) AS latest
                FROM orders
                WHERE customer_id = %(customer_id)s AND status <> 'cancelled'
            ) s
            WHERE c.id = %(customer_id)s
        """, {'customer_id': customer_id})
        updated = cur.rowcount > 0

    logger.debug(f"refresh_customer_stats: customer_id={customer_id} updated={updated}")
    return updated


# =============================================================================
# CAMPAIGN OPERATIONS
# =============================================================================

def _campaign_from_row(row: Dict[str, Any]) -> Campaign:
    return Campaign(
        id=row['id'],
        name=row['name'],
        rules=row['rules'],
        message=row['message'],
        created_by=row['created_by'],
        audience_size=row['audience_size'],
        status=row['status'],
        stats=CampaignStats(
            total=row['stats_total'],
            sent=row['stats_sent'],
            failed=row['stats_failed'],
            pending=row['stats_pending'],
        ),
        created_at=row.get('created_at'),
        updated_at=row.get('updated_at'),
    )


def insert_campaign(campaign: Campaign, logs: List[MessageLog]) -> Campaign:
    """
    Persist a campaign and its message logs in one transaction: either all
    of them exist afterwards or none do.
    Returns: the stored campaign (with id and timestamps)
    """
    with get_db_cursor() as cur:
        cur.execute("""
            INSERT INTO campaigns (
                name, rules, message, created_by, audience_size, status,
                stats_total, stats_sent, stats_failed, stats_pending, created_at, updated_at
            ) VALUES (
                %(name)s, %(rules)s, %(message)s, %(created_by)s, %(audience_size)s, %(status)s,
                %(total)s, %(sent)s, %(failed)s, %(pending)s, NOW(), NOW()
            ) RETURNING *
        """, {
            'name': campaign.name,
            'rules': Json(campaign.rules),
            'message': campaign.message,
            'created_by': campaign.created_by,
            'audience_size': campaign.audience_size,
            'status': campaign.status,
            **campaign.stats.as_dict(),
        })
        stored = _campaign_from_row(cur.fetchone())

        execute_values(cur, """
            INSERT INTO message_logs (campaign_id, customer_id, message, status)
            VALUES %s
        """, [(stored.id, log.customer_id, log.message, LOG_PENDING) for log in logs])

    logger.info(f"Created campaign ID {stored.id}: {stored.name} ({len(logs)} message logs)")
    return stored


def get_campaign(campaign_id: int) -> Optional[Campaign]:
    """Get campaign by ID."""
    with get_db_cursor() as cur:
        cur.execute("SELECT * FROM campaigns WHERE id = %s", (campaign_id,))
        row = cur.fetchone()
        if row:
            return _campaign_from_row(row)
        logger.debug(f"get_campaign: campaign_id={campaign_id} not found")
        return None


def list_campaigns(limit: int = 50) -> List[Campaign]:
    """Most recent campaigns first."""
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT * FROM campaigns
            ORDER BY created_at DESC, id DESC
            LIMIT %s
        """, (limit,))
        return [_campaign_from_row(row) for row in cur.fetchall()]


def update_campaign_stats(
    campaign_id: int,
    summarize: Callable[[Dict[str, int]], Tuple[CampaignStats, str]],
) -> Optional[Campaign]:
    """
    Recount a campaign's message logs by status and write the result.

    The campaign row is locked (SELECT ... FOR UPDATE) for the whole
    read-count-write, so concurrent recomputations for one campaign run one
    at a time and the last writer always saw every committed log change.

    Args:
        campaign_id: campaign to recompute
        summarize: maps {status: count} to (stats, campaign status)
    Returns: updated campaign, or None if it doesn't exist
    """
    with get_db_cursor() as cur:
        cur.execute("SELECT id FROM campaigns WHERE id = %s FOR UPDATE", (campaign_id,))
        if not cur.fetchone():
            logger.warning(f"update_campaign_stats: campaign_id={campaign_id} not found")
            return None

        cur.execute("""
            SELECT status, COUNT(*) AS n
            FROM message_logs
            WHERE campaign_id = %s
            GROUP BY status
        """, (campaign_id,))
        counts = {row['status']: row['n'] for row in cur.fetchall()}

        stats, status = summarize(counts)

        cur.execute("""
            UPDATE campaigns
            SET stats_total = %(total)s, stats_sent = %(sent)s,
                stats_failed = %(failed)s, stats_pending = %(pending)s,
                status = %(status)s, updated_at = NOW()
            WHERE id = %(campaign_id)s
            RETURNING *
        """, {**stats.as_dict(), 'status': status, 'campaign_id': campaign_id})
        return _campaign_from_row(cur.fetchone())


# =============================================================================
# MESSAGE LOG OPERATIONS
# =============================================================================

def get_message_log(log_id: int) -> Optional[MessageLog]:
    """Get message log by ID."""
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT id, campaign_id, customer_id, message, status, sent_at,
                   delivery_receipt, created_at, updated_at
            FROM message_logs WHERE id = %s
        """, (log_id,))
        row = cur.fetchone()
        return MessageLog(**row) if row else None


def get_message_logs(campaign_id: int) -> List[Dict[str, Any]]:
    """
    All logs of a campaign joined with recipient name/email, newest first.
    Returns plain dicts: MessageLog fields plus customer_name, customer_email.
    """
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT l.id, l.campaign_id, l.customer_id, l.message, l.status, l.sent_at,
                   l.delivery_receipt, l.created_at, l.updated_at,
                   c.name AS customer_name, c.email AS customer_email
            FROM message_logs l
            JOIN customers c ON c.id = l.customer_id
            WHERE l.campaign_id = %s
            ORDER BY l.created_at DESC, l.id DESC
        """, (campaign_id,))
        return [dict(row) for row in cur.fetchall()]


def get_pending_deliveries(campaign_id: int) -> List[PendingDelivery]:
    """Snapshot of a campaign's PENDING logs with recipient contact fields."""
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT l.id AS log_id, l.campaign_id, c.name AS customer_name,
                   c.email AS customer_email, l.message
            FROM message_logs l
            JOIN customers c ON c.id = l.customer_id
            WHERE l.campaign_id = %s AND l.status = %s
            ORDER BY l.id
        """, (campaign_id, LOG_PENDING))
        return [PendingDelivery(**row) for row in cur.fetchall()]


def transition_log(
    log_id: int,
    status: str,
    sent_at=None,
    receipt: Optional[Dict[str, Any]] = None,
) -> Optional[int]:
    """
    Move a message log out of PENDING. Compare-and-set: a log already SENT
    or FAILED is never touched.
    Returns: the owning campaign_id if this call made the transition, else None
    """
    with get_db_cursor() as cur:
        cur.execute("""
            UPDATE message_logs
            SET status = %(status)s,
                sent_at = %(sent_at)s,
                delivery_receipt = %(receipt)s,
                updated_at = NOW()
            WHERE id = %(log_id)s AND status = %(pending)s
            RETURNING campaign_id
        """, {
            'status': status,
            'sent_at': sent_at,
            'receipt': Json(receipt) if receipt is not None else None,
            'log_id': log_id,
            'pending': LOG_PENDING,
        })
        row = cur.fetchone()

    if row:
        logger.debug(f"transition_log: log {log_id} PENDING -> {status}")
        return row['campaign_id']
    return None
