# tests/test_reconciler.py
# Three-way reconciliation and the append-only reservation variant

from dataclasses import replace
from datetime import datetime, timedelta

from services.portal.base import MenuItemRecord
from services.portal.reconciler import (
    dedupe_by_key,
    existing_by_key,
    reconcile,
    reconcile_reservations,
)
from fakes import make_reservation

NOW = datetime(2024, 10, 31, 12, 0)


class TestReconcile:
    """Updates / inserts / deactivations keyed by natural key"""

    def test_menu_scenario(self):
        existing = {"A": {"id": 1}, "B": {"id": 2}}
        incoming = [MenuItemRecord(name="A", price=6000), MenuItemRecord(name="C", price=3000)]

        result = reconcile(existing, incoming, now=NOW)

        assert result.update_keys == {"A"}
        assert result.insert_keys == {"C"}
        assert result.deactivation_keys == {"B"}
        assert result.updates[0].row_id == 1
        assert result.updates[0].record.price == 6000
        assert result.deactivations[0].row_id == 2

    def test_partition_of_incoming_keys(self, sample_menus):
        existing = {sample_menus[0].name: {"id": 10}, "old": {"id": 11}}
        result = reconcile(existing, sample_menus, now=NOW)

        incoming_keys = {m.name for m in sample_menus}
        assert result.update_keys | result.insert_keys == incoming_keys
        assert not result.update_keys & result.insert_keys
        assert result.processed == len(sample_menus)

    def test_deactivation_never_deletes(self, sample_staff):
        existing = {s.name: {"id": i} for i, s in enumerate(sample_staff)}
        result = reconcile(existing, [], now=NOW)

        assert result.deactivation_keys == set(existing)
        assert not result.updates and not result.inserts

    def test_second_run_is_idempotent(self, sample_coupons):
        first = reconcile({}, sample_coupons, now=NOW)
        assert first.insert_keys == {c.coupon_id for c in sample_coupons}

        stored = {c.coupon_id: {"id": i} for i, c in enumerate(sample_coupons)}
        second = reconcile(stored, sample_coupons, now=NOW)
        assert not second.inserts
        assert not second.deactivations
        assert second.update_keys == {c.coupon_id for c in sample_coupons}

    def test_timestamps_applied(self):
        result = reconcile({"A": {"id": 1}}, [MenuItemRecord(name="B")], now=NOW)
        assert result.inserts[0].created_at == NOW
        assert result.inserts[0].updated_at == NOW
        assert result.deactivations[0].updated_at == NOW

    def test_duplicate_incoming_keys_first_wins(self):
        incoming = [MenuItemRecord(name="A", price=1), MenuItemRecord(name="A", price=2)]
        result = reconcile({}, incoming, now=NOW)
        assert len(result.inserts) == 1
        assert result.inserts[0].record.price == 1
        assert result.skipped == 1


class TestReconcileReservations:
    """Cursor-filtered appends"""

    def test_cursor_scenario(self):
        t0 = datetime(2024, 10, 1, 9, 0)
        before = make_reservation("BE001", t0 - timedelta(hours=1))
        after = make_reservation("BE002", t0 + timedelta(hours=1))

        result = reconcile_reservations(set(), [before, after], t0, now=NOW)

        assert result.insert_keys == {"BE002"}
        assert result.skipped == 1
        assert not result.updates and not result.deactivations

    def test_record_at_cursor_is_not_after_it(self):
        t0 = datetime(2024, 10, 1, 9, 0)
        result = reconcile_reservations(set(), [make_reservation("BE001", t0)], t0)
        assert not result.inserts

    def test_known_ids_skipped(self):
        t0 = datetime(2024, 10, 1)
        records = [make_reservation("BE001", t0 + timedelta(days=1))]
        result = reconcile_reservations({"BE001"}, records, t0)
        assert not result.inserts
        assert result.skipped == 1

    def test_unparsable_or_anonymous_rows_skipped(self):
        t0 = datetime(2024, 10, 1)
        no_time = replace(make_reservation("BE001", t0 + timedelta(days=1)), reserved_at=None)
        no_id = make_reservation("", t0 + timedelta(days=1))
        result = reconcile_reservations(set(), [no_time, no_id], t0)
        assert not result.inserts
        assert result.skipped == 2

    def test_repeated_id_in_one_extraction(self):
        t0 = datetime(2024, 10, 1)
        record = make_reservation("BE001", t0 + timedelta(days=1))
        result = reconcile_reservations(set(), [record, record], t0)
        assert len(result.inserts) == 1


class TestHelpers:
    def test_dedupe_keeps_order(self):
        records = [MenuItemRecord(name=n) for n in ("B", "A", "B", "C")]
        assert [r.name for r in dedupe_by_key(records)] == ["B", "A", "C"]

    def test_existing_by_key(self):
        rows = [{"id": 1, "name": "A"}, {"id": 2, "name": "B"}]
        assert existing_by_key(rows, "name")["B"]["id"] == 2
