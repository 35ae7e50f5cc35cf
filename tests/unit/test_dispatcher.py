"""
Unit tests for xenocrm/engine/dispatcher.py.

crm and reconciler are patched at xenocrm.engine.dispatcher.*; the vendor is
a MagicMock whose send() either returns an ACCEPTED body or raises
VendorAcceptFailure. delay_seconds=0 keeps runs instant unless a test is
about the delay itself.
"""

import threading
import time
from unittest.mock import MagicMock, patch, call

import psycopg2
import pytest

from xenocrm.errors import VendorAcceptFailure
from xenocrm.models import PendingDelivery
from xenocrm.engine.dispatcher import Dispatcher, DispatchResult
from xenocrm.bus.events import EVENT_DISPATCH_STARTED, EVENT_DISPATCH_DRAINED, EVENT_MESSAGE_FAILED


def deliveries(campaign_id=1, n=3):
    return [
        PendingDelivery(log_id=100 + i, campaign_id=campaign_id, customer_name=f"Customer {i}",
                        customer_email=f"c{i}@example.com", message=f"Hi Customer {i}")
        for i in range(n)
    ]


def eventually(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def mock_crm():
    with patch('xenocrm.engine.dispatcher.crm') as mock:
        yield mock


@pytest.fixture
def mock_reconciler():
    with patch('xenocrm.engine.dispatcher.reconciler') as mock:
        yield mock


@pytest.fixture
def vendor():
    v = MagicMock()
    v.send.return_value = {'status': 'ACCEPTED'}
    return v


@pytest.fixture
def dispatcher(vendor):
    d = Dispatcher(vendor, delay_seconds=0, accept_timeout=1.0, max_campaigns=4)
    yield d
    d.shutdown(wait=True)


# ---------------------------------------------------------------------------
# run(): the send loop
# ---------------------------------------------------------------------------

class TestRun:

    def test_sends_each_pending_log_in_order(self, dispatcher, vendor, mock_crm, mock_reconciler):
        mock_crm.get_pending_deliveries.return_value = deliveries(n=3)
        result = dispatcher.run(1)

        assert result == DispatchResult(campaign_id=1, attempted=3, accepted=3, failed=0)
        assert [c[1]['message_id'] for c in vendor.send.call_args_list] == [100, 101, 102]
        first = vendor.send.call_args_list[0][1]
        assert first == {
            'message_id': 100, 'recipient_address': 'c0@example.com',
            'recipient_name': 'Customer 0', 'message': 'Hi Customer 0', 'timeout': 1.0,
        }

    def test_accepted_messages_stay_pending(self, dispatcher, mock_crm, mock_reconciler):
        mock_crm.get_pending_deliveries.return_value = deliveries(n=2)
        dispatcher.run(1)
        mock_crm.transition_log.assert_not_called()

    def test_accept_failure_marks_log_failed_and_continues(self, dispatcher, vendor, mock_crm, mock_reconciler):
        mock_crm.get_pending_deliveries.return_value = deliveries(n=3)
        mock_crm.transition_log.return_value = 1
        vendor.send.side_effect = [
            {'status': 'ACCEPTED'},
            VendorAcceptFailure(101, 'connection refused'),
            {'status': 'ACCEPTED'},
        ]

        result = dispatcher.run(1)

        assert result.attempted == 3
        assert result.accepted == 2
        assert result.failed == 1
        mock_crm.transition_log.assert_called_once_with(101, 'FAILED', None, {'error': 'connection refused'})
        # Once after the failure, once when the run drains
        assert mock_reconciler.refresh_campaign.call_args_list == [call(1), call(1)]

    def test_failure_on_already_terminal_log_is_not_recorded(self, dispatcher, vendor, mock_crm, mock_reconciler):
        mock_crm.get_pending_deliveries.return_value = deliveries(n=1)
        mock_crm.transition_log.return_value = None
        vendor.send.side_effect = VendorAcceptFailure(100, 'timeout')

        with patch('xenocrm.engine.dispatcher.bus.emit') as mock_emit:
            dispatcher.run(1)

        events = [c[0][0] for c in mock_emit.call_args_list]
        assert EVENT_MESSAGE_FAILED not in events

    def test_database_error_recording_failure_does_not_stop_run(self, dispatcher, vendor, mock_crm, mock_reconciler):
        mock_crm.get_pending_deliveries.return_value = deliveries(n=3)
        vendor.send.side_effect = [
            VendorAcceptFailure(100, 'connection refused'),
            {'status': 'ACCEPTED'},
            {'status': 'ACCEPTED'},
        ]
        mock_crm.transition_log.side_effect = [psycopg2.OperationalError('connection lost'), 1]

        result = dispatcher.run(1)

        assert vendor.send.call_count == 3
        assert (result.attempted, result.accepted, result.failed) == (3, 2, 1)
        # Retried once after the batch
        assert mock_crm.transition_log.call_args_list == [
            call(100, 'FAILED', None, {'error': 'connection refused'}),
            call(100, 'FAILED', None, {'error': 'connection refused'}),
        ]

    def test_failure_that_cannot_be_stored_is_logged(self, dispatcher, vendor, mock_crm, mock_reconciler, caplog):
        mock_crm.get_pending_deliveries.return_value = deliveries(n=1)
        vendor.send.side_effect = VendorAcceptFailure(100, 'timeout')
        mock_crm.transition_log.side_effect = psycopg2.OperationalError('connection lost')

        result = dispatcher.run(1)

        assert result.failed == 1
        assert mock_crm.transition_log.call_count == 2
        assert any('left PENDING' in r.getMessage() for r in caplog.records)

    def test_empty_campaign_drains_immediately(self, dispatcher, vendor, mock_crm, mock_reconciler):
        mock_crm.get_pending_deliveries.return_value = []
        assert dispatcher.run(1) == DispatchResult(campaign_id=1)
        vendor.send.assert_not_called()
        mock_reconciler.refresh_campaign.assert_called_once_with(1)

    def test_emits_started_and_drained(self, dispatcher, mock_crm, mock_reconciler):
        mock_crm.get_pending_deliveries.return_value = deliveries(n=2)
        with patch('xenocrm.engine.dispatcher.bus.emit') as mock_emit:
            dispatcher.run(1)
        events = [c[0] for c in mock_emit.call_args_list]
        assert events[0] == (EVENT_DISPATCH_STARTED, {'campaign_id': 1, 'batch_size': 2})
        assert events[-1] == (EVENT_DISPATCH_DRAINED, {'campaign_id': 1, 'attempted': 2, 'accepted': 2, 'failed': 0})

    def test_fixed_delay_after_every_attempt(self, vendor, mock_crm, mock_reconciler):
        mock_crm.get_pending_deliveries.return_value = deliveries(n=3)
        vendor.send.side_effect = [{'status': 'ACCEPTED'}, VendorAcceptFailure(101, 'x'), {'status': 'ACCEPTED'}]
        d = Dispatcher(vendor, delay_seconds=0.25, accept_timeout=1.0, max_campaigns=1)
        try:
            with patch('xenocrm.engine.dispatcher.time.sleep') as mock_sleep:
                d.run(1)
        finally:
            d.shutdown()
        assert mock_sleep.call_args_list == [call(0.25)] * 3

    def test_sends_are_strictly_sequential(self, mock_crm, mock_reconciler):
        mock_crm.get_pending_deliveries.return_value = deliveries(n=4)
        in_flight = []
        peak = []
        lock = threading.Lock()

        def slow_send(**kwargs):
            with lock:
                in_flight.append(1)
                peak.append(len(in_flight))
            time.sleep(0.01)
            with lock:
                in_flight.pop()
            return {'status': 'ACCEPTED'}

        vendor = MagicMock()
        vendor.send.side_effect = slow_send
        d = Dispatcher(vendor, delay_seconds=0, accept_timeout=1.0, max_campaigns=1)
        try:
            d.run(1)
        finally:
            d.shutdown()
        assert max(peak) == 1


# ---------------------------------------------------------------------------
# launch(): background supervision
# ---------------------------------------------------------------------------

class TestLaunch:

    def test_launch_runs_in_background(self, dispatcher, mock_crm, mock_reconciler):
        mock_crm.get_pending_deliveries.return_value = deliveries(n=2)
        future = dispatcher.launch(1)
        result = future.result(timeout=5)
        assert result.accepted == 2
        assert dispatcher.wait(1, timeout=5) is result

    def test_second_launch_while_running_returns_same_future(self, vendor, mock_crm, mock_reconciler):
        gate = threading.Event()
        mock_crm.get_pending_deliveries.return_value = deliveries(n=1)
        vendor.send.side_effect = lambda **kw: gate.wait(5) and {'status': 'ACCEPTED'}
        d = Dispatcher(vendor, delay_seconds=0, accept_timeout=1.0, max_campaigns=2)
        try:
            first = d.launch(1)
            second = d.launch(1)
            assert first is second
            gate.set()
            first.result(timeout=5)
        finally:
            gate.set()
            d.shutdown()
        assert vendor.send.call_count == 1

    def test_relaunch_after_drain_starts_new_run(self, dispatcher, mock_crm, mock_reconciler):
        mock_crm.get_pending_deliveries.return_value = []
        first = dispatcher.launch(1)
        first.result(timeout=5)
        second = dispatcher.launch(1)
        second.result(timeout=5)
        assert first is not second

    def test_campaigns_run_independently(self, vendor, mock_crm, mock_reconciler):
        gate = threading.Event()
        mock_crm.get_pending_deliveries.side_effect = lambda cid: deliveries(campaign_id=cid, n=1)

        def send(**kwargs):
            # Campaign 1 blocks until campaign 2 has been sent
            if kwargs['message_id'] == 100 and not gate.is_set():
                gate.wait(5)
            return {'status': 'ACCEPTED'}

        vendor.send.side_effect = send
        d = Dispatcher(vendor, delay_seconds=0, accept_timeout=1.0, max_campaigns=2)
        try:
            slow = d.launch(1)
            time.sleep(0.05)
            mock_crm.get_pending_deliveries.side_effect = lambda cid: [
                PendingDelivery(log_id=200, campaign_id=cid, customer_name='B', customer_email='b@example.com', message='Hi B')
            ]
            fast = d.launch(2)
            fast.result(timeout=5)
            assert not slow.done()
            gate.set()
            slow.result(timeout=5)
        finally:
            gate.set()
            d.shutdown()

    def test_crashed_run_is_logged_and_reraised_on_wait(self, dispatcher, mock_crm, mock_reconciler, caplog):
        mock_crm.get_pending_deliveries.side_effect = RuntimeError("db down")
        future = dispatcher.launch(1)
        with pytest.raises(RuntimeError):
            dispatcher.wait(1, timeout=5)
        assert future.done()
        dispatcher.shutdown(wait=True)
        assert any('crashed' in r.getMessage() for r in caplog.records)

    def test_wait_unknown_campaign_raises(self, dispatcher):
        with pytest.raises(KeyError):
            dispatcher.wait(42)

    def test_wait_all(self, dispatcher, mock_crm, mock_reconciler):
        mock_crm.get_pending_deliveries.return_value = deliveries(n=1)
        dispatcher.launch(1)
        dispatcher.launch(2)
        assert dispatcher.wait_all(timeout=5) is True
        assert dispatcher.run_for(3) is None

    def test_finished_run_leaves_active_set_but_stays_waitable(self, dispatcher, mock_crm, mock_reconciler):
        mock_crm.get_pending_deliveries.return_value = deliveries(n=1)
        future = dispatcher.launch(1)
        result = future.result(timeout=5)
        # Done callbacks run on the worker thread just after the result is set
        assert eventually(lambda: 1 not in dispatcher._runs)
        assert dispatcher.run_for(1) is future
        assert dispatcher.wait(1, timeout=5) is result

    def test_finished_history_is_bounded(self, dispatcher, mock_crm, mock_reconciler):
        mock_crm.get_pending_deliveries.return_value = []
        with patch('xenocrm.engine.dispatcher.FINISHED_RUNS_KEPT', 2):
            for campaign_id in (1, 2, 3):
                dispatcher.launch(campaign_id).result(timeout=5)
                assert eventually(lambda: campaign_id not in dispatcher._runs)
        assert dispatcher.run_for(1) is None
        assert dispatcher.run_for(3) is not None
