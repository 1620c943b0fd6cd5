"""Tests for the sync engine."""

import threading

import pytest
from fixtures import make_invoice

from invoice_sync.local_store import RecordType
from invoice_sync.outbox import SyncState
from invoice_sync.remote_client import SyncConnectionError
from invoice_sync.schemas.wire import PullChanges
from invoice_sync.services.mutations import MutationService
from invoice_sync.services.status import EngineState
from invoice_sync.services.sync_engine import SyncEngine


@pytest.fixture
def mutations(store, outbox, engine) -> MutationService:
    return MutationService(store, outbox, engine)


class TestOfflineToOnline:
    """Invoice created offline reaches the remote once connectivity returns."""

    def test_invoice_created_offline_syncs_on_reconnect(
        self, engine, mutations, store, outbox, remote
    ):
        engine.start()
        invoice, items = make_invoice(n_items=2)

        mutations.save_invoice(invoice, items)

        # Visible locally right away, no server-assigned number yet
        local = store.get_invoice_with_items("inv-1")
        assert local["invoiceNumber"] == ""
        assert len(local["lineItems"]) == 2
        assert outbox.pending_count() == 1
        assert remote.batches == []

        engine.set_online(True)

        synced = store.get_invoice_with_items("inv-1")
        assert synced["invoiceNumber"] == "INV-0001"
        assert len(synced["lineItems"]) == 2
        assert outbox.pending_count() == 0
        assert remote.created_invoice_count == 1
        assert len(remote.batches) == 1
        assert remote.pulls == [("full", None)]
        assert engine.last_sync_at == store.get_last_sync_at() is not None
        assert engine.state is EngineState.IDLE

    def test_sync_result_counts(self, engine, mutations, remote):
        mutations.save_customer({"id": "c1", "businessId": "biz-1", "name": "Acme"})
        remote.store("products", {"id": "p9", "businessId": "biz-1", "name": "Bolt"})
        engine.set_online(True)

        result = engine.sync()

        assert result.success
        assert result.pushed == 1
        assert result.synced == 1
        assert result.full_sync is True
        assert result.pulled == 2  # c1 echoed back plus p9
        assert result.synced_at == engine.last_sync_at


class TestCycleExclusion:
    """At most one cycle runs at a time."""

    def test_concurrent_sync_is_skipped(self, engine, mutations, remote):
        mutations.save_customer({"id": "c1", "businessId": "biz-1"})
        engine.set_online(True)
        concurrent_results = []

        def sync_from_other_thread(_mutations):
            worker = threading.Thread(target=lambda: concurrent_results.append(engine.sync()))
            worker.start()
            worker.join()

        remote.on_push = sync_from_other_thread

        result = engine.sync()

        assert result is not None
        assert concurrent_results == [None]
        assert len(remote.batches) == 1
        assert len(remote.pulls) == 1

    def test_reentrant_sync_is_skipped(self, engine, mutations, remote):
        mutations.save_customer({"id": "c1", "businessId": "biz-1"})
        engine.set_online(True)
        nested = []
        remote.on_push = lambda _m: nested.append(engine.sync())

        engine.sync()

        assert nested == [None]
        assert len(remote.pulls) == 1

    def test_push_before_pull(self, engine, mutations, remote, monkeypatch):
        calls = []
        original_get_full = remote.get_full

        def get_full():
            calls.append("pull")
            return original_get_full()

        remote.on_push = lambda _m: calls.append("push")
        monkeypatch.setattr(remote, "get_full", get_full)
        mutations.save_customer({"id": "c1", "businessId": "biz-1"})
        engine.set_online(True)

        engine.sync()

        assert calls == ["push", "pull"]

    def test_offline_sync_returns_none(self, engine, mutations, remote):
        mutations.save_customer({"id": "c1", "businessId": "biz-1"})

        assert engine.sync() is None
        assert remote.batches == []
        assert remote.pulls == []


class TestPushOutcomes:
    """Per-entry results, retries and idempotent re-delivery."""

    def test_retry_ceiling(self, engine, mutations, outbox, remote):
        remote.reject_types = {"CREATE_CUSTOMER"}
        mutations.save_customer({"id": "c1", "businessId": "biz-1"})
        mutations.save_product({"id": "p1", "businessId": "biz-1"})
        engine.set_online(True)

        first = engine.sync()
        assert first.synced == 1
        assert first.retried == 1
        entry = outbox.pending_entries()[0]
        assert entry.type == "CREATE_CUSTOMER"
        assert entry.retry_count == 1
        assert entry.error == "Rejected by server"

        engine.sync()
        third = engine.sync()
        assert third.failed == 1

        assert outbox.pending_count() == 0
        failed = outbox.failed_entries()
        assert [e.data["id"] for e in failed] == ["c1"]
        assert failed[0].retry_count == 3
        assert engine.status.failed_count == 1

        engine.sync()
        # The fourth cycle has nothing to push
        assert len(remote.batches) == 3
        assert len(remote.pulls) == 4

    def test_rejected_entry_does_not_block_others(self, engine, mutations, store, remote):
        remote.reject_types = {"CREATE_CUSTOMER"}
        mutations.save_customer({"id": "c1", "businessId": "biz-1"})
        invoice, items = make_invoice()
        mutations.save_invoice(invoice, items)
        engine.set_online(True)

        engine.sync()

        assert store.get(RecordType.INVOICES, "inv-1")["invoiceNumber"] == "INV-0001"

    def test_idempotent_redelivery(self, engine, mutations, outbox, store, remote, monkeypatch):
        """Server committed but the response was lost: re-push creates no duplicate."""
        original_push = remote.push_batch
        attempts = []

        def lossy_push(batch):
            results = original_push(batch)
            attempts.append(batch)
            if len(attempts) == 1:
                raise SyncConnectionError("connection reset")
            return results

        monkeypatch.setattr(remote, "push_batch", lossy_push)
        invoice, items = make_invoice()
        key = mutations.save_invoice(invoice, items)
        engine.set_online(True)

        first = engine.sync()
        assert not first.success
        assert outbox.pending_entries()[0].retry_count == 1
        # Pull is skipped when the push failed
        assert remote.pulls == []

        second = engine.sync()
        assert second.success

        assert [m.idempotency_key for batch in attempts for m in batch] == [key, key]
        assert remote.created_invoice_count == 1
        assert store.get(RecordType.INVOICES, "inv-1")["invoiceNumber"] == "INV-0001"
        assert outbox.pending_count() == 0

    def test_transport_failure_counts_toward_ceiling(self, engine, mutations, outbox, remote):
        remote.push_error = SyncConnectionError("network unreachable")
        mutations.save_product({"id": "p1", "businessId": "biz-1"})
        engine.set_online(True)

        for _ in range(3):
            engine.sync()

        assert outbox.pending_count() == 0
        assert outbox.failed_count() == 1

    def test_missing_result_leaves_entry_pending(self, engine, mutations, outbox, remote, monkeypatch):
        monkeypatch.setattr(remote, "push_batch", lambda batch: [])
        mutations.save_product({"id": "p1", "businessId": "biz-1"})
        engine.set_online(True)

        result = engine.sync()

        assert result.success
        entry = outbox.pending_entries()[0]
        assert entry.retry_count == 0

    def test_server_assigned_id_replaces_placeholder(self, engine, mutations, store, remote):
        remote.assign_ids = True
        mutations.save_customer({"id": "c1", "businessId": "biz-1", "name": "Acme"})
        invoice, items = make_invoice("tmp-inv", n_items=2)
        mutations.save_invoice(invoice, items)
        engine.set_online(True)

        engine.sync()

        assert store.get(RecordType.CUSTOMERS, "c1") is None
        assert store.get(RecordType.CUSTOMERS, "srv-c1")["name"] == "Acme"
        assert store.get(RecordType.INVOICES, "tmp-inv") is None
        assert store.get_line_items("tmp-inv") == []
        server_invoice = store.get_invoice_with_items("srv-tmp-inv")
        assert len(server_invoice["lineItems"]) == 2
        assert {i["invoiceId"] for i in server_invoice["lineItems"]} == {"srv-tmp-inv"}

    def test_server_id_remaps_later_changes(self, engine, mutations, outbox, store, remote):
        """Changes queued against a placeholder id follow the record to its server id."""
        remote.assign_ids = True
        mutations.save_customer({"id": "c1", "businessId": "biz-1", "name": "Acme"})
        engine.set_online(True)

        def edit_during_push(batch):
            remote.on_push = None
            mutations.save_customer({"id": "c1", "businessId": "biz-1", "name": "Acme Ltd"})
            invoice, items = make_invoice("inv-2", customerId="c1", n_items=1)
            mutations.save_invoice(invoice, items)

        remote.on_push = edit_during_push
        engine.sync()

        pending = {entry.type: entry.data for entry in outbox.pending_entries()}
        assert pending["UPDATE_CUSTOMER"]["id"] == "srv-c1"
        assert pending["CREATE_INVOICE"]["customerId"] == "srv-c1"
        assert store.get(RecordType.INVOICES, "inv-2")["customerId"] == "srv-c1"
        assert store.list(RecordType.INVOICES, filters={"customerId": "c1"}) == []

        engine.sync()

        assert "c1" not in remote.records["customers"]
        assert remote.records["customers"]["srv-c1"]["name"] == "Acme Ltd"
        assert remote.records["invoices"]["srv-inv-2"]["customerId"] == "srv-c1"
        assert store.get(RecordType.CUSTOMERS, "srv-c1")["name"] == "Acme Ltd"


class TestPull:
    """Full vs delta selection and atomic application."""

    def test_full_then_delta(self, engine, remote, store):
        engine.set_online(True)

        first = engine.sync()
        remote.store("customers", {"id": "c2", "businessId": "biz-1", "name": "Remote edit"})
        engine.sync()

        assert remote.pulls == [("full", None), ("delta", first.synced_at)]
        assert store.get(RecordType.CUSTOMERS, "c2")["name"] == "Remote edit"

    def test_delta_uses_persisted_last_sync_at(self, store, outbox, remote, scheduler, sync_config):
        """A new engine on an existing store continues with delta pulls."""
        store.set_sync_meta("lastSyncAt", "2024-05-01T00:00:00Z")
        engine = SyncEngine(store, outbox, remote, scheduler, sync_config, is_online=True)

        assert engine.last_sync_at == "2024-05-01T00:00:00Z"
        engine.sync()
        assert remote.pulls == [("delta", "2024-05-01T00:00:00Z")]

    def test_pull_failure_keeps_last_sync_at(self, engine, remote, store):
        engine.set_online(True)
        first = engine.sync()

        remote.store("customers", {"id": "c2", "businessId": "biz-1"})
        remote.pull_error = SyncConnectionError("timed out")
        failed = engine.sync()

        assert not failed.success
        assert store.get_last_sync_at() == first.synced_at
        assert engine.last_sync_at == first.synced_at
        assert store.get(RecordType.CUSTOMERS, "c2") is None

        remote.pull_error = None
        engine.sync()

        assert remote.pulls[-1] == ("delta", first.synced_at)
        assert store.get(RecordType.CUSTOMERS, "c2") is not None

    def test_pull_applied_atomically(self, engine, remote, store, monkeypatch):
        """A bad record aborts the whole pull, including lastSyncAt."""
        invoice, items = make_invoice("inv-remote")
        changes = PullChanges(
            synced_at="2024-06-01T12:00:00Z",
            invoices=[{**invoice, "lineItems": items}],
            customers=[{"businessId": "biz-1", "name": "No id"}],
        )
        monkeypatch.setattr(remote, "get_full", lambda: changes)
        engine.set_online(True)

        result = engine.sync()

        assert not result.success
        assert store.get(RecordType.INVOICES, "inv-remote") is None
        assert store.get_last_sync_at() is None

    def test_full_sync_stores_business_settings(self, engine, remote, store):
        remote.business = {"id": "biz-1", "name": "Sharma Traders", "gstin": "07AAAAA0000A1Z5"}
        engine.set_online(True)

        engine.sync()

        assert store.get(RecordType.BUSINESS_SETTINGS, "biz-1")["name"] == "Sharma Traders"

    def test_pulled_invoice_replaces_line_items(self, engine, remote, store):
        invoice, items = make_invoice("inv-9", n_items=3)
        store.save_invoice_with_items(invoice, items)
        remote.store("invoices", {**invoice, "invoiceNumber": "INV-0042", "lineItems": items[:1]})
        engine.set_online(True)

        engine.sync()

        saved = store.get_invoice_with_items("inv-9")
        assert saved["invoiceNumber"] == "INV-0042"
        assert [i["id"] for i in saved["lineItems"]] == ["inv-9-item-0"]


class TestStatusReporting:
    """State transitions seen by subscribers."""

    def test_error_state_is_transient(self, engine, remote):
        states = []
        engine.subscribe(lambda status: states.append(status.state))
        remote.pull_error = SyncConnectionError("timed out")
        engine.set_online(True)

        engine.sync()

        assert EngineState.SYNCING in states
        assert EngineState.ERROR in states
        assert states[-1] is EngineState.IDLE
        assert engine.state is EngineState.IDLE

    def test_error_snapshot_carries_message(self, engine, remote):
        errors = []
        engine.subscribe(
            lambda s: errors.append(s.last_error) if s.state is EngineState.ERROR else None
        )
        remote.pull_error = SyncConnectionError("timed out")
        engine.set_online(True)

        engine.sync()

        assert errors == ["timed out"]

    def test_status_snapshot(self, engine, mutations):
        mutations.save_customer({"id": "c1", "businessId": "biz-1"})

        status = engine.status

        assert status.is_online is False
        assert status.is_syncing is False
        assert status.pending_count == 1
        assert status.last_sync_at is None

    def test_failing_listener_does_not_break_cycle(self, engine, remote):
        seen = []

        def broken(_status):
            raise RuntimeError("listener bug")

        engine.subscribe(broken)
        engine.subscribe(lambda s: seen.append(s.state))
        engine.set_online(True)

        result = engine.sync()

        assert result.success
        assert seen[-1] is EngineState.IDLE

    def test_unsubscribe(self, engine):
        seen = []
        unsubscribe = engine.subscribe(seen.append)
        unsubscribe()

        engine.set_online(True)

        assert seen == []


class TestTriggers:
    """Timer, connectivity and mutation triggers."""

    def test_periodic_timer(self, engine, remote, scheduler):
        engine.set_online(True)
        engine.start()
        assert len(remote.pulls) == 1

        scheduler.advance(30)
        assert len(remote.pulls) == 2

        scheduler.advance(60)
        assert len(remote.pulls) == 4

    def test_no_cycles_while_offline(self, engine, mutations, remote, scheduler):
        engine.start()
        mutations.save_customer({"id": "c1", "businessId": "biz-1"})

        scheduler.advance(300)

        assert remote.batches == []
        assert remote.pulls == []

    def test_online_event_debounced(self, engine, remote, scheduler):
        engine.set_online(True)
        engine.start()
        assert len(remote.pulls) == 1

        engine.set_online(False)
        scheduler.advance(2)
        engine.set_online(True)
        assert len(remote.pulls) == 1

        engine.set_online(False)
        scheduler.advance(4)
        engine.set_online(True)
        assert len(remote.pulls) == 2

    def test_going_offline_mid_cycle_does_not_abort(self, engine, mutations, remote):
        mutations.save_customer({"id": "c1", "businessId": "biz-1"})
        engine.set_online(True)
        remote.on_push = lambda _m: engine.set_online(False)

        result = engine.sync()

        assert result.success
        assert len(remote.pulls) == 1
        assert engine.is_online is False

    def test_mutation_schedules_sync(self, engine, mutations, remote, scheduler):
        engine.set_online(True)
        engine.start()
        assert remote.batches == []

        mutations.save_customer({"id": "c1", "businessId": "biz-1"})
        mutations.save_product({"id": "p1", "businessId": "biz-1"})
        assert remote.batches == []

        scheduler.advance(1.0)

        assert len(remote.batches) == 1
        assert [m.type for m in remote.batches[0]] == ["CREATE_CUSTOMER", "CREATE_PRODUCT"]

    def test_stop_cancels_timers(self, engine, mutations, remote, scheduler):
        engine.set_online(True)
        engine.start()
        mutations.save_customer({"id": "c1", "businessId": "biz-1"})

        engine.stop()

        assert scheduler.pending_timers == 0
        scheduler.advance(120)
        assert len(remote.pulls) == 1
        assert remote.batches == []

    def test_not_started_engine_ignores_online_event(self, engine, remote):
        engine.set_online(True)

        assert remote.pulls == []

    def test_unexpected_error_reported_not_raised(self, engine, remote, scheduler, monkeypatch):
        def explode():
            raise KeyError("bug")

        monkeypatch.setattr(remote, "get_full", explode)
        engine.set_online(True)
        engine.start()

        scheduler.advance(30)

        assert engine.state is EngineState.IDLE
        assert engine.last_sync_at is None


def test_synced_entries_kept_until_cleared(engine, mutations, outbox):
    mutations.save_customer({"id": "c1", "businessId": "biz-1"})
    engine.set_online(True)
    engine.sync()

    entry = outbox.get(1)
    assert entry.sync_state == SyncState.SYNCED
    assert outbox.clear_synced() == 1
