#!/usr/bin/env python3
"""
Xeno CRM Terminal CLI
Command-line interface for customers, segments, campaigns and receipts.
"""

import json
import logging
import re
import click
from datetime import timezone

from xenocrm.engine import crm
from xenocrm.errors import XenoCRMError
from xenocrm.models import Customer, Order, ORDER_STATUSES
from xenocrm.logging_config import configure_logging, log_call

_EMAIL_RE = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')

AI_MODEL_CHOICES = ['claude', 'deepseek-chat', 'deepseek-reasoner']
VENDOR_CHOICES = ['simulator', 'http']


def _load_json(raw: str, label: str):
    """Parse a JSON argument, turning syntax errors into a clean usage error."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON ({e})", param_hint=label)


def _read_json_array(path: str, label: str) -> list:
    with open(path, encoding='utf-8') as fh:
        data = _load_json(fh.read(), label)
    if not isinstance(data, list):
        raise click.BadParameter("expected a JSON array", param_hint=label)
    return data


def _print_stats(campaign) -> None:
    s = campaign.stats
    click.echo(f"Status:   {campaign.status}")
    click.echo(f"Audience: {campaign.audience_size}")
    click.echo(f"Stats:    total={s.total} sent={s.sent} failed={s.failed} pending={s.pending}")


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Also log to stderr')
def cli(verbose):
    """Xeno CRM - Customer segmentation & campaign delivery"""
    configure_logging(console=verbose)


@cli.command('initdb')
@log_call
def initdb():
    """Create database tables (safe to re-run)"""
    from xenocrm.db.connection import init_db

    init_db()
    click.echo("✓ Database schema is up to date")


# =============================================================================
# CUSTOMERS COMMANDS
# =============================================================================

@cli.group()
def customers():
    """Manage customers"""
    pass


@customers.command('list')
@click.option('--min-spend', type=float, help='Minimum total spend')
@click.option('--max-spend', type=float, help='Maximum total spend')
@click.option('--min-visits', type=int, help='Minimum visit count')
@click.option('--page', default=1, help='Page number (default: 1)')
@click.option('--limit', default=50, help='Page size (default: 50)')
@log_call
def customers_list(min_spend, max_spend, min_visits, page, limit):
    """List customers, newest first"""
    results, total = crm.list_customers(
        min_spend=min_spend,
        max_spend=max_spend,
        min_visits=min_visits,
        limit=limit,
        offset=(max(page, 1) - 1) * limit,
    )

    if not results:
        click.echo("No customers found.")
        return

    pages = (total + limit - 1) // limit
    click.echo(f"\nPage {page}/{pages} ({total} customers):\n")
    click.echo(f"{'ID':<6} {'Name':<25} {'Email':<30} {'Spend':>10} {'Visits':>7}  {'Last visit':<10}")
    click.echo("-" * 95)

    for c in results:
        last = c.last_visit.date().isoformat() if c.last_visit else ''
        click.echo(
            f"{c.id:<6} {c.name[:23]:<25} {c.email[:28]:<30} {float(c.total_spend):>10.2f} {c.visit_count:>7}  {last:<10}"
        )


@customers.command('add')
@click.option('--name', prompt='Name', help='Customer name')
@click.option('--email', prompt='Email', help='Customer email (must be unique)')
@click.option('--phone', default='', help='Phone number')
@log_call
def customers_add(name, email, phone):
    """Add a customer"""
    if not _EMAIL_RE.match(email):
        logging.getLogger("xenocrm").debug(f"customers_add | rejected email={email!r}")
        click.echo(f"Invalid email address: {email}", err=True)
        return

    try:
        customer_id = crm.create_customer(Customer(name=name, email=email, phone=phone or None))
    except XenoCRMError as e:
        click.echo(f"Error: {e}", err=True)
        return

    click.echo(f"✓ Created customer #{customer_id}: {name}")


@customers.command('import')
@click.argument('path', type=click.Path(exists=True, dir_okay=False))
@log_call
def customers_import(path):
    """Import customers from a JSON array file"""
    from xenocrm.engine import ingest

    result = ingest.import_customers(_read_json_array(path, 'PATH'))
    click.echo(f"✓ Inserted {result['inserted']} customers ({result['skipped']} skipped)")
    for email in result['duplicates']:
        click.echo(f"  duplicate: {email}")


# =============================================================================
# ORDERS COMMANDS
# =============================================================================

@cli.group()
def orders():
    """Record and list orders (recording updates customer spend and visits)"""
    pass


@orders.command('list')
@click.option('--customer-id', type=int, help='Only orders of this customer')
@click.option('--page', default=1, help='Page number (default: 1)')
@click.option('--limit', default=50, help='Page size (default: 50)')
@log_call
def orders_list(customer_id, page, limit):
    """List orders, most recent order date first"""
    results, total = crm.list_orders(
        customer_id=customer_id,
        limit=limit,
        offset=(max(page, 1) - 1) * limit,
    )

    if not results:
        click.echo("No orders found.")
        return

    pages = (total + limit - 1) // limit
    click.echo(f"\nPage {page}/{pages} ({total} orders):\n")
    click.echo(f"{'ID':<6} {'Date':<10}  {'Customer':<25} {'Email':<30} {'Amount':>10}  {'Status':<9}")
    click.echo("-" * 95)

    for o in results:
        date = o['order_date'].date().isoformat() if o['order_date'] else ''
        click.echo(
            f"{o['id']:<6} {date:<10}  {o['customer_name'][:23]:<25} {o['customer_email'][:28]:<30} "
            f"{float(o['amount']):>10.2f}  {o['status']:<9}"
        )


@orders.command('add')
@click.argument('customer_id', type=int)
@click.argument('amount', type=float)
@click.option('--date', 'order_date', type=click.DateTime(formats=['%Y-%m-%d']), help='Order date (YYYY-MM-DD, default: now)')
@click.option('--status', type=click.Choice(ORDER_STATUSES), default='completed', show_default=True)
@log_call
def orders_add(customer_id, amount, order_date, status):
    """Record an order for a customer"""
    order = Order(
        customer_id=customer_id,
        amount=amount,
        order_date=order_date.replace(tzinfo=timezone.utc) if order_date else None,
        status=status,
    )
    try:
        order_id = crm.record_order(order)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        return

    click.echo(f"✓ Recorded order #{order_id} for customer #{customer_id}")


@orders.command('import')
@click.argument('path', type=click.Path(exists=True, dir_okay=False))
@log_call
def orders_import(path):
    """Import orders from a JSON array file"""
    from xenocrm.engine import ingest

    result = ingest.import_orders(_read_json_array(path, 'PATH'))
    click.echo(f"✓ Inserted {result['inserted']} orders ({result['invalid']} invalid skipped)")


# =============================================================================
# SEGMENT COMMANDS
# =============================================================================

@cli.group()
def segment():
    """Build and preview audience rules"""
    pass


@segment.command('preview')
@click.argument('rules_json')
@log_call
def segment_preview(rules_json):
    """Count customers matching RULES_JSON, e.g. '{"total_spend": {"gt": 5000}}'"""
    from xenocrm.engine import segmentation

    try:
        size = segmentation.count(_load_json(rules_json, 'RULES_JSON'))
    except XenoCRMError as e:
        click.echo(f"Error: {e}", err=True)
        return

    click.echo(f"Audience size: {size}")


@segment.command('translate')
@click.argument('text')
@click.option('--model', type=click.Choice(AI_MODEL_CHOICES), default=None, help='AI model to use')
@click.option('--no-ai', is_flag=True, help='Use keyword matching only')
@click.option('--preview', is_flag=True, help='Also count the matching customers')
@log_call
def segment_translate(text, model, no_ai, preview):
    """Turn a plain-English audience description into rules"""
    from xenocrm.config import config
    from xenocrm.engine import segmentation
    from xenocrm.engine.ai_client import AIClient

    ai = None if no_ai else AIClient.from_config(config, model=model)
    predicate = segmentation.translate_natural_language(text, ai=ai)
    rules = segmentation.to_rules(predicate)

    click.echo(json.dumps(rules))
    if not rules:
        click.echo("(no rules recognised: this matches every customer)", err=True)
    if preview:
        click.echo(f"Audience size: {segmentation.count(predicate)}")


# =============================================================================
# CAMPAIGN COMMANDS
# =============================================================================

@cli.group()
def campaigns():
    """Create and inspect campaigns"""
    pass


@campaigns.command('create')
@click.argument('name')
@click.option('--rules', 'rules_json', help='Audience rules as JSON')
@click.option('--describe', help='Audience in plain English (translated by AI)')
@click.option('--message', help='Message template, may contain {name}')
@click.option('--created-by', help='Creator identity')
@click.option('--vendor', type=click.Choice(VENDOR_CHOICES), default=None, help='Delivery vendor (default: VENDOR_MODE)')
@click.option('--no-wait', is_flag=True, help='Exit once dispatch has drained, without waiting for receipts')
@click.option('--timeout', default=300.0, show_default=True, help='Seconds to wait for delivery to settle')
@log_call
def campaigns_create(name, rules_json, describe, message, created_by, vendor, no_wait, timeout):
    """Create a campaign and deliver it"""
    from xenocrm.engine import campaigns as orchestrator
    from xenocrm.engine import segmentation
    from xenocrm.engine.pipeline import build_pipeline

    if bool(rules_json) == bool(describe):
        click.echo("Give exactly one of --rules or --describe", err=True)
        return

    rules = _load_json(rules_json, '--rules') if rules_json else None
    pipeline = build_pipeline(vendor_mode=vendor)
    try:
        if describe:
            rules = segmentation.translate_natural_language(describe, ai=pipeline.ai)
            click.echo(f"Rules: {json.dumps(segmentation.to_rules(rules))}")

        try:
            campaign = orchestrator.create_campaign(
                name, rules, pipeline.dispatcher, message=message, created_by=created_by,
            )
        except XenoCRMError as e:
            click.echo(f"Error: {e}", err=True)
            return

        click.echo(f"✓ Created campaign #{campaign.id}: {campaign.name} ({campaign.audience_size} recipients)")
        click.echo("Delivering...")

        if no_wait:
            pipeline.dispatcher.wait(campaign.id, timeout=timeout)
        elif not pipeline.settle(campaign.id, timeout=timeout):
            click.echo(f"Timed out after {timeout:g}s; some receipts are still outstanding.", err=True)

        _print_stats(crm.get_campaign(campaign.id))
    finally:
        pipeline.close()


@campaigns.command('list')
@click.option('--limit', default=50, help='Max results (default: 50)')
@log_call
def campaigns_list(limit):
    """List recent campaigns"""
    results = crm.list_campaigns(limit=limit)

    if not results:
        click.echo("No campaigns yet.")
        return

    click.echo(f"\n{len(results)} campaigns:\n")
    click.echo(f"{'ID':<6} {'Name':<30} {'Status':<10} {'Total':>6} {'Sent':>6} {'Failed':>6} {'Pending':>8}")
    click.echo("-" * 80)

    for c in results:
        s = c.stats
        click.echo(
            f"{c.id:<6} {c.name[:28]:<30} {c.status:<10} {s.total:>6} {s.sent:>6} {s.failed:>6} {s.pending:>8}"
        )


@campaigns.command('show')
@click.argument('campaign_id', type=int)
@log_call
def campaigns_show(campaign_id):
    """Show a campaign and its message logs"""
    from xenocrm.engine import campaigns as orchestrator

    try:
        campaign, logs = orchestrator.get_campaign_detail(campaign_id)
    except XenoCRMError as e:
        click.echo(f"Error: {e}", err=True)
        return

    click.echo(f"\n=== CAMPAIGN #{campaign.id}: {campaign.name} ===\n")
    click.echo(f"Created by: {campaign.created_by}")
    click.echo(f"Rules:    {json.dumps(campaign.rules)}")
    click.echo(f"Message:  {campaign.message}")
    _print_stats(campaign)

    if logs:
        click.echo(f"\n{'Log':<8} {'Customer':<25} {'Status':<8} {'Sent at':<20}")
        click.echo("-" * 65)
        for log in logs:
            sent_at = log['sent_at'].strftime('%Y-%m-%d %H:%M:%S') if log['sent_at'] else ''
            click.echo(f"{log['id']:<8} {log['customer_name'][:23]:<25} {log['status']:<8} {sent_at:<20}")


@campaigns.command('summary')
@click.argument('campaign_id', type=int)
@click.option('--model', type=click.Choice(AI_MODEL_CHOICES), default=None, help='AI model to use')
@click.option('--no-ai', is_flag=True, help='Use the templated summary')
@log_call
def campaigns_summary(campaign_id, model, no_ai):
    """Plain-English delivery summary for a campaign"""
    from xenocrm.config import config
    from xenocrm.engine import ai_writer
    from xenocrm.engine.ai_client import AIClient

    campaign = crm.get_campaign(campaign_id)
    if campaign is None:
        click.echo(f"Campaign #{campaign_id} not found", err=True)
        return

    ai = None if no_ai else AIClient.from_config(config, model=model)
    click.echo(ai_writer.generate_campaign_summary(campaign.stats, ai=ai))


# =============================================================================
# AI COMMANDS
# =============================================================================

@cli.group()
def ai():
    """AI helpers for campaign copy"""
    pass


@ai.command('messages')
@click.argument('objective')
@click.option('--audience', default='general audience', show_default=True, help='Who the campaign targets')
@click.option('--model', type=click.Choice(AI_MODEL_CHOICES), default=None, help='AI model to use')
@log_call
def ai_messages(objective, audience, model):
    """Suggest message templates for a campaign objective"""
    from xenocrm.config import config
    from xenocrm.engine import ai_writer
    from xenocrm.engine.ai_client import AIClient

    messages = ai_writer.generate_campaign_messages(
        objective, audience=audience, ai=AIClient.from_config(config, model=model),
    )
    for i, text in enumerate(messages, 1):
        click.echo(f"{i}. {text}")


# =============================================================================
# RECEIPT COMMANDS
# =============================================================================

@cli.group()
def receipt():
    """Vendor delivery receipts"""
    pass


@receipt.command('apply')
@click.argument('payload_json')
@log_call
def receipt_apply(payload_json):
    """Apply a vendor receipt, e.g. '{"message_id": 12, "status": "SENT"}'"""
    from xenocrm.engine import reconciler

    try:
        ack = reconciler.handle_receipt_callback(_load_json(payload_json, 'PAYLOAD_JSON'))
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        return

    click.echo(json.dumps(ack))


if __name__ == '__main__':
    cli()
