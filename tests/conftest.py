# tests/conftest.py
# Shared pytest setup and fixtures

import os
import sys
from datetime import datetime

import pytest
from cryptography.fernet import Fernet

# Backend modules are imported top-level (config, database, services.*)
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'backend'))

# config reads the environment once at import time
os.environ.setdefault("PORTAL_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("PORTAL_BASE_URL", "https://salonboard.com")
os.environ.setdefault("JWT_SECRET", "test-secret")

from services.crypto import TokenCipher  # noqa: E402
from services.portal.base import (  # noqa: E402
    CouponRecord,
    MenuItemRecord,
    OutboundReservation,
    PortalCredentials,
    StaffRecord,
)
from services.portal.selectors import default_layout  # noqa: E402


@pytest.fixture
def layout():
    return default_layout()


@pytest.fixture
def cipher():
    return TokenCipher(Fernet.generate_key().decode())


@pytest.fixture
def credentials():
    return PortalCredentials(username="salon-user", password="s3cret")


@pytest.fixture
def owner():
    return {"id": "owner-1", "username": "hanako", "salon_type": "hair", "auto_sync_enabled": True}


@pytest.fixture
def sample_menus():
    return [
        MenuItemRecord(name="カット", category="CUT", price=5500, duration=60, is_reservable=True, is_published=True),
        MenuItemRecord(name="カラー", category="COLOR", price=8800, duration=90, is_reservable=True, is_published=True),
        MenuItemRecord(name="トリートメント", category="TREATMENT", price=3300, duration=30),
    ]


@pytest.fixture
def sample_staff():
    return [
        StaffRecord(name="山田 太郎", role="スタイリスト", experience="10年", is_published=True, sort_order=1),
        StaffRecord(name="佐藤 花子", role="アシスタント", experience=None, is_published=False, sort_order=2),
    ]


@pytest.fixture
def sample_coupons():
    return [
        CouponRecord(coupon_id="CP00000001", name="新規カット", price=4400, duration=60, is_reservable=True),
        CouponRecord(coupon_id="CP00000002", name="カット+カラー", price=9900, duration=120),
    ]


@pytest.fixture
def outbound_reservation():
    return OutboundReservation(
        reservation_id="res-1",
        staff_name="山田　太郎",
        start_time=datetime(2024, 10, 31, 14, 30),
        end_time=datetime(2024, 10, 31, 16, 0),
        customer_name="鈴木 花子",
        customer_kana="スズキ ハナコ",
        phone="09012345678",
        memo="初回",
    )
