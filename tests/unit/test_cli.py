"""
Unit tests for xenocrm/cli/main.py.

Mocking strategy:
  - patch xenocrm.cli.main.crm for CRM-level calls
  - patch xenocrm.cli.main.configure_logging (autouse) to prevent file I/O
  - commands import engine modules lazily inside the function body, so those
    are patched at xenocrm.engine.<module>.<function>
  - click.testing.CliRunner invokes commands end-to-end
"""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from xenocrm.cli.main import cli
from xenocrm.errors import CampaignNotFound, DuplicateCustomer, EmptyAudience, InvalidPredicate
from xenocrm.models import Campaign, CampaignStats, Clause, Customer, Predicate


SAMPLE_CUSTOMER = Customer(
    id=1, name='Priya Sharma', email='priya@example.com', total_spend=6000, visit_count=4,
    last_visit=datetime(2026, 9, 30, tzinfo=timezone.utc),
)

SAMPLE_CAMPAIGN = Campaign(
    id=7, name='Big spenders', rules={'total_spend': {'gt': 5000}}, message='Hi {name}',
    audience_size=3, status='completed', stats=CampaignStats(total=3, sent=2, failed=1, pending=0),
)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def no_logging():
    with patch("xenocrm.cli.main.configure_logging"):
        yield


# ---------------------------------------------------------------------------
# initdb
# ---------------------------------------------------------------------------

def test_initdb(runner):
    with patch("xenocrm.db.connection.init_db") as mock_init:
        result = runner.invoke(cli, ["initdb"])
    assert result.exit_code == 0
    mock_init.assert_called_once()
    assert "schema" in result.output


# ---------------------------------------------------------------------------
# customers
# ---------------------------------------------------------------------------

class TestCustomersList:

    def test_empty(self, runner):
        with patch("xenocrm.cli.main.crm") as mock_crm:
            mock_crm.list_customers.return_value = ([], 0)
            result = runner.invoke(cli, ["customers", "list"])
        assert result.exit_code == 0
        assert "No customers found" in result.output

    def test_lists_customers(self, runner):
        with patch("xenocrm.cli.main.crm") as mock_crm:
            mock_crm.list_customers.return_value = ([SAMPLE_CUSTOMER], 1)
            result = runner.invoke(cli, ["customers", "list"])
        assert result.exit_code == 0
        assert "Priya Sharma" in result.output
        assert "6000.00" in result.output
        assert "2026-09-30" in result.output
        assert "Page 1/1" in result.output

    def test_filters_and_paging(self, runner):
        with patch("xenocrm.cli.main.crm") as mock_crm:
            mock_crm.list_customers.return_value = ([], 0)
            runner.invoke(cli, ["customers", "list", "--min-spend", "1000", "--min-visits", "2",
                                "--page", "3", "--limit", "20"])
        mock_crm.list_customers.assert_called_once_with(
            min_spend=1000.0, max_spend=None, min_visits=2, limit=20, offset=40,
        )


class TestCustomersAdd:

    def test_creates_customer(self, runner):
        with patch("xenocrm.cli.main.crm") as mock_crm:
            mock_crm.create_customer.return_value = 12
            result = runner.invoke(cli, ["customers", "add", "--name", "Amit", "--email", "amit@example.com"])
        assert result.exit_code == 0
        assert "Created customer #12" in result.output
        created = mock_crm.create_customer.call_args[0][0]
        assert (created.name, created.email, created.phone) == ('Amit', 'amit@example.com', None)

    def test_rejects_bad_email(self, runner):
        with patch("xenocrm.cli.main.crm") as mock_crm:
            result = runner.invoke(cli, ["customers", "add", "--name", "Amit", "--email", "not-an-email"])
        assert "Invalid email" in result.output
        mock_crm.create_customer.assert_not_called()

    def test_duplicate_email(self, runner):
        with patch("xenocrm.cli.main.crm") as mock_crm:
            mock_crm.create_customer.side_effect = DuplicateCustomer('amit@example.com')
            result = runner.invoke(cli, ["customers", "add", "--name", "Amit", "--email", "amit@example.com"])
        assert result.exit_code == 0
        assert "already exists" in result.output


def test_customers_import(runner, tmp_path):
    path = tmp_path / "customers.json"
    path.write_text(json.dumps([{'name': 'A', 'email': 'a@example.com'}]))
    with patch("xenocrm.engine.ingest.import_customers",
               return_value={'inserted': 1, 'skipped': 1, 'duplicates': ['b@example.com'], 'invalid': 0}) as mock_import:
        result = runner.invoke(cli, ["customers", "import", str(path)])
    assert result.exit_code == 0
    mock_import.assert_called_once_with([{'name': 'A', 'email': 'a@example.com'}])
    assert "Inserted 1 customers (1 skipped)" in result.output
    assert "duplicate: b@example.com" in result.output


def test_customers_import_requires_array(runner, tmp_path):
    path = tmp_path / "customers.json"
    path.write_text('{"name": "A"}')
    result = runner.invoke(cli, ["customers", "import", str(path)])
    assert result.exit_code != 0
    assert "JSON array" in result.output


# ---------------------------------------------------------------------------
# orders
# ---------------------------------------------------------------------------

SAMPLE_ORDER_ROW = {
    'id': 12, 'customer_id': 1, 'amount': 2500, 'order_date': datetime(2026, 10, 2, tzinfo=timezone.utc),
    'status': 'completed', 'created_at': datetime(2026, 10, 2, tzinfo=timezone.utc),
    'customer_name': 'Priya Sharma', 'customer_email': 'priya@example.com',
}


class TestOrdersList:

    def test_empty(self, runner):
        with patch("xenocrm.cli.main.crm") as mock_crm:
            mock_crm.list_orders.return_value = ([], 0)
            result = runner.invoke(cli, ["orders", "list"])
        assert result.exit_code == 0
        assert "No orders found" in result.output

    def test_lists_orders_with_customer(self, runner):
        with patch("xenocrm.cli.main.crm") as mock_crm:
            mock_crm.list_orders.return_value = ([SAMPLE_ORDER_ROW], 1)
            result = runner.invoke(cli, ["orders", "list"])
        assert result.exit_code == 0
        assert "Priya Sharma" in result.output
        assert "priya@example.com" in result.output
        assert "2500.00" in result.output
        assert "2026-10-02" in result.output
        assert "Page 1/1" in result.output

    def test_customer_filter_and_paging(self, runner):
        with patch("xenocrm.cli.main.crm") as mock_crm:
            mock_crm.list_orders.return_value = ([], 0)
            runner.invoke(cli, ["orders", "list", "--customer-id", "4", "--page", "2", "--limit", "10"])
        mock_crm.list_orders.assert_called_once_with(customer_id=4, limit=10, offset=10)


class TestOrdersAdd:

    def test_records_order(self, runner):
        with patch("xenocrm.cli.main.crm") as mock_crm:
            mock_crm.record_order.return_value = 99
            result = runner.invoke(cli, ["orders", "add", "1", "2500", "--date", "2026-10-01"])
        assert result.exit_code == 0
        assert "Recorded order #99" in result.output
        order = mock_crm.record_order.call_args[0][0]
        assert order.customer_id == 1
        assert order.amount == 2500.0
        assert order.order_date == datetime(2026, 10, 1, tzinfo=timezone.utc)
        assert order.status == 'completed'

    def test_unknown_customer(self, runner):
        with patch("xenocrm.cli.main.crm") as mock_crm:
            mock_crm.record_order.side_effect = ValueError("Customer 5 not found")
            result = runner.invoke(cli, ["orders", "add", "5", "10"])
        assert "Error: Customer 5 not found" in result.output

    def test_invalid_status_rejected_by_click(self, runner):
        result = runner.invoke(cli, ["orders", "add", "1", "10", "--status", "shipped"])
        assert result.exit_code != 0


def test_orders_import(runner, tmp_path):
    path = tmp_path / "orders.json"
    path.write_text(json.dumps([{'customer_id': 1, 'amount': 100}]))
    with patch("xenocrm.engine.ingest.import_orders", return_value={'inserted': 1, 'invalid': 0}):
        result = runner.invoke(cli, ["orders", "import", str(path)])
    assert "Inserted 1 orders" in result.output


# ---------------------------------------------------------------------------
# segment
# ---------------------------------------------------------------------------

class TestSegment:

    def test_preview(self, runner):
        with patch("xenocrm.engine.segmentation.count", return_value=42) as mock_count:
            result = runner.invoke(cli, ["segment", "preview", '{"total_spend": {"gt": 5000}}'])
        assert result.exit_code == 0
        assert "Audience size: 42" in result.output
        mock_count.assert_called_once_with({'total_spend': {'gt': 5000}})

    def test_preview_invalid_rules(self, runner):
        with patch("xenocrm.engine.segmentation.count", side_effect=InvalidPredicate("Unknown field 'x'")):
            result = runner.invoke(cli, ["segment", "preview", '{"x": 1}'])
        assert "Error: Unknown field" in result.output

    def test_preview_bad_json(self, runner):
        result = runner.invoke(cli, ["segment", "preview", "{not json"])
        assert result.exit_code != 0
        assert "not valid JSON" in result.output

    def test_translate_without_ai(self, runner):
        result = runner.invoke(cli, ["segment", "translate", "customers who spent over 5000", "--no-ai"])
        assert result.exit_code == 0
        assert json.loads(result.output.splitlines()[0]) == {'total_spend': {'gt': 5000}}

    def test_translate_with_ai_and_preview(self, runner):
        predicate = Predicate((Clause('visit_count', 'lt', 3),))
        with patch("xenocrm.engine.segmentation.translate_natural_language", return_value=predicate) as mock_tr, \
             patch("xenocrm.engine.segmentation.count", return_value=8):
            result = runner.invoke(cli, ["segment", "translate", "rare visitors", "--preview", "--model", "claude"])
        assert result.exit_code == 0
        assert '{"visit_count": {"lt": 3}}' in result.output
        assert "Audience size: 8" in result.output
        assert mock_tr.call_args[1]['ai'].model == 'claude'

    def test_translate_nothing_recognised_warns(self, runner):
        result = runner.invoke(cli, ["segment", "translate", "everyone nice", "--no-ai"])
        assert "matches every customer" in result.output


# ---------------------------------------------------------------------------
# campaigns
# ---------------------------------------------------------------------------

@pytest.fixture
def pipeline():
    p = MagicMock()
    p.settle.return_value = True
    with patch("xenocrm.engine.pipeline.build_pipeline", return_value=p) as mock_build:
        p.build = mock_build
        yield p


class TestCampaignsCreate:

    def test_create_with_rules(self, runner, pipeline):
        with patch("xenocrm.engine.campaigns.create_campaign", return_value=SAMPLE_CAMPAIGN) as mock_create, \
             patch("xenocrm.cli.main.crm") as mock_crm:
            mock_crm.get_campaign.return_value = SAMPLE_CAMPAIGN
            result = runner.invoke(cli, [
                "campaigns", "create", "Big spenders",
                "--rules", '{"total_spend": {"gt": 5000}}',
                "--message", "Hi {name}", "--created-by", "ops",
            ])

        assert result.exit_code == 0, result.output
        args, kwargs = mock_create.call_args
        assert args == ('Big spenders', {'total_spend': {'gt': 5000}}, pipeline.dispatcher)
        assert kwargs == {'message': 'Hi {name}', 'created_by': 'ops'}
        pipeline.settle.assert_called_once_with(7, timeout=300.0)
        pipeline.close.assert_called_once()
        assert "Created campaign #7" in result.output
        assert "sent=2 failed=1 pending=0" in result.output

    def test_create_with_description(self, runner, pipeline):
        predicate = Predicate((Clause('total_spend', 'gt', 5000),))
        with patch("xenocrm.engine.segmentation.translate_natural_language", return_value=predicate) as mock_tr, \
             patch("xenocrm.engine.campaigns.create_campaign", return_value=SAMPLE_CAMPAIGN) as mock_create, \
             patch("xenocrm.cli.main.crm") as mock_crm:
            mock_crm.get_campaign.return_value = SAMPLE_CAMPAIGN
            result = runner.invoke(cli, ["campaigns", "create", "X", "--describe", "spent over 5000"])
        assert result.exit_code == 0, result.output
        assert mock_tr.call_args[1]['ai'] is pipeline.ai
        assert mock_create.call_args[0][1] is predicate
        assert 'Rules: {"total_spend": {"gt": 5000}}' in result.output

    def test_requires_exactly_one_audience_option(self, runner, pipeline):
        result = runner.invoke(cli, ["campaigns", "create", "X"])
        assert "exactly one of --rules or --describe" in result.output
        pipeline.build.assert_not_called()

    def test_empty_audience(self, runner, pipeline):
        with patch("xenocrm.engine.campaigns.create_campaign", side_effect=EmptyAudience({})):
            result = runner.invoke(cli, ["campaigns", "create", "X", "--rules", "{}"])
        assert "Error: No customers match the specified rules" in result.output
        pipeline.close.assert_called_once()

    def test_settle_timeout_is_reported(self, runner, pipeline):
        pipeline.settle.return_value = False
        with patch("xenocrm.engine.campaigns.create_campaign", return_value=SAMPLE_CAMPAIGN), \
             patch("xenocrm.cli.main.crm") as mock_crm:
            mock_crm.get_campaign.return_value = SAMPLE_CAMPAIGN
            result = runner.invoke(cli, ["campaigns", "create", "X", "--rules", "{}", "--timeout", "1"])
        assert "Timed out after 1s" in result.output

    def test_no_wait_only_waits_for_dispatch(self, runner, pipeline):
        with patch("xenocrm.engine.campaigns.create_campaign", return_value=SAMPLE_CAMPAIGN), \
             patch("xenocrm.cli.main.crm") as mock_crm:
            mock_crm.get_campaign.return_value = SAMPLE_CAMPAIGN
            runner.invoke(cli, ["campaigns", "create", "X", "--rules", "{}", "--no-wait"])
        pipeline.dispatcher.wait.assert_called_once_with(7, timeout=300.0)
        pipeline.settle.assert_not_called()


class TestCampaignsList:

    def test_empty(self, runner):
        with patch("xenocrm.cli.main.crm") as mock_crm:
            mock_crm.list_campaigns.return_value = []
            result = runner.invoke(cli, ["campaigns", "list"])
        assert "No campaigns yet" in result.output

    def test_lists(self, runner):
        with patch("xenocrm.cli.main.crm") as mock_crm:
            mock_crm.list_campaigns.return_value = [SAMPLE_CAMPAIGN]
            result = runner.invoke(cli, ["campaigns", "list", "--limit", "5"])
        mock_crm.list_campaigns.assert_called_once_with(limit=5)
        assert "Big spenders" in result.output
        assert "completed" in result.output


class TestCampaignsShow:

    def test_shows_logs(self, runner):
        logs = [{'id': 31, 'customer_name': 'Priya Sharma', 'status': 'SENT',
                 'sent_at': datetime(2026, 10, 19, 9, 30, tzinfo=timezone.utc)}]
        with patch("xenocrm.engine.campaigns.get_campaign_detail", return_value=(SAMPLE_CAMPAIGN, logs)):
            result = runner.invoke(cli, ["campaigns", "show", "7"])
        assert result.exit_code == 0
        assert "CAMPAIGN #7: Big spenders" in result.output
        assert "Priya Sharma" in result.output
        assert "2026-10-19 09:30:00" in result.output

    def test_not_found(self, runner):
        with patch("xenocrm.engine.campaigns.get_campaign_detail", side_effect=CampaignNotFound(7)):
            result = runner.invoke(cli, ["campaigns", "show", "7"])
        assert "Error: Campaign 7 not found" in result.output


class TestCampaignsSummary:

    def test_fallback_summary(self, runner):
        with patch("xenocrm.cli.main.crm") as mock_crm:
            mock_crm.get_campaign.return_value = SAMPLE_CAMPAIGN
            result = runner.invoke(cli, ["campaigns", "summary", "7", "--no-ai"])
        assert "reached 3 customers with a 66.7% delivery rate" in result.output

    def test_not_found(self, runner):
        with patch("xenocrm.cli.main.crm") as mock_crm:
            mock_crm.get_campaign.return_value = None
            result = runner.invoke(cli, ["campaigns", "summary", "7"])
        assert "not found" in result.output


# ---------------------------------------------------------------------------
# ai / receipt
# ---------------------------------------------------------------------------

def test_ai_messages(runner):
    with patch("xenocrm.engine.ai_writer.generate_campaign_messages", return_value=['A {name}', 'B {name}']) as mock_gen:
        result = runner.invoke(cli, ["ai", "messages", "win back", "--audience", "lapsed"])
    assert "1. A {name}" in result.output
    assert "2. B {name}" in result.output
    assert mock_gen.call_args[0] == ('win back',)
    assert mock_gen.call_args[1]['audience'] == 'lapsed'


class TestReceiptApply:

    def test_acknowledges(self, runner):
        ack = {'success': True, 'message': 'Receipt processed'}
        with patch("xenocrm.engine.reconciler.handle_receipt_callback", return_value=ack) as mock_handle:
            result = runner.invoke(cli, ["receipt", "apply", '{"message_id": 12, "status": "SENT"}'])
        assert result.exit_code == 0
        mock_handle.assert_called_once_with({'message_id': 12, 'status': 'SENT'})
        assert json.loads(result.output) == ack

    def test_malformed(self, runner):
        with patch("xenocrm.engine.reconciler.handle_receipt_callback",
                   side_effect=ValueError("Receipt status must be SENT or FAILED")):
            result = runner.invoke(cli, ["receipt", "apply", '{"message_id": 12}'])
        assert "Error: Receipt status" in result.output
