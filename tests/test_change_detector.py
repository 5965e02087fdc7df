# tests/test_change_detector.py
# Canonical content hash

from dataclasses import replace
from datetime import datetime

from services.portal.change_detector import compute_content_hash
from fakes import make_reservation


class TestContentHash:
    """SHA-256 over records sorted by natural key"""

    def test_order_independent(self, sample_menus):
        assert compute_content_hash(sample_menus) == compute_content_hash(list(reversed(sample_menus)))

    def test_hex_digest(self, sample_staff):
        digest = compute_content_hash(sample_staff)
        assert len(digest) == 64
        int(digest, 16)

    def test_field_change_changes_hash(self, sample_menus):
        changed = [replace(sample_menus[0], price=6000)] + sample_menus[1:]
        assert compute_content_hash(changed) != compute_content_hash(sample_menus)

    def test_empty_set_is_stable(self):
        assert compute_content_hash([]) == compute_content_hash([])

    def test_reservations_with_timestamps(self):
        records = [
            make_reservation("BE002", datetime(2024, 11, 1, 10, 0)),
            make_reservation("BE001", datetime(2024, 10, 31, 9, 30)),
        ]
        assert compute_content_hash(records) == compute_content_hash(records[::-1])
