"""Subscription policy and account loading."""
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from billing.accounts import load_account
from billing.subscription import (
    INCOMPLETE_SESSION_LIMIT_MINUTES,
    get_session_limit,
    get_subscription_status_message,
    is_cancelled_subscription_active,
    is_valid_for_translation,
    is_valid_subscription_status,
    requires_subscription_attention,
)
from core.exceptions import StoreError, UserNotFoundError

from fakes import InMemorySessionStore

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


class TestStatusPolicy:

    @pytest.mark.parametrize("status,valid,translate,attention", [
        ("active", True, True, False),
        ("incomplete", True, True, True),
        ("canceled", True, True, False),
        ("past_due", False, False, True),
        ("unpaid", False, False, True),
        (None, False, True, False),
    ])
    def test_status_matrix(self, status, valid, translate, attention):
        assert is_valid_subscription_status(status) is valid
        assert is_valid_for_translation(status) is translate
        assert requires_subscription_attention(status) is attention

    def test_messages(self):
        assert get_subscription_status_message("active") == "Your subscription is active"
        assert get_subscription_status_message(None) == "No active subscription found"
        assert get_subscription_status_message("trialing") == "Unknown subscription status"


class TestSessionLimit:

    @pytest.mark.parametrize("status,limit,expected", [
        ("active", 600, 600),
        ("active", None, 180),
        ("canceled", 300, 300),
        (None, None, 180),
        ("incomplete", 600, INCOMPLETE_SESSION_LIMIT_MINUTES),
        ("past_due", 600, 0),
        ("unpaid", 600, 0),
    ])
    def test_effective_limit(self, status, limit, expected):
        assert get_session_limit(status, limit) == expected

    def test_custom_default(self):
        assert get_session_limit(None, None, default_minutes=45) == 45


class TestCancelledAccess:

    def test_inside_paid_period(self):
        assert is_cancelled_subscription_active("canceled", NOW + timedelta(days=3), now=NOW)

    def test_after_paid_period(self):
        assert not is_cancelled_subscription_active("canceled", NOW - timedelta(seconds=1), now=NOW)

    def test_deleted_subscription_has_no_period(self):
        assert not is_cancelled_subscription_active("canceled", None, now=NOW)

    def test_naive_period_end_is_utc(self):
        assert is_cancelled_subscription_active("canceled", datetime(2026, 3, 2), now=NOW)

    def test_other_statuses(self):
        assert not is_cancelled_subscription_active("active", NOW + timedelta(days=3), now=NOW)


class TestLoadAccount:

    def test_loads_billing_facts(self):
        store = InMemorySessionStore()
        store.add_user("u1", email="u1@example.com", subscription_status="active", session_limit_minutes=240)

        account = asyncio.run(load_account(store, "u1"))

        assert account.user_id == "u1"
        assert account.session_limit_minutes == 240
        assert account.subscription_status == "active"

    def test_missing_user(self):
        with pytest.raises(UserNotFoundError):
            asyncio.run(load_account(InMemorySessionStore(), "ghost"))

    def test_store_failure_is_not_a_missing_user(self):
        store = InMemorySessionStore()
        store.add_user("u1")
        store.fail_on.add("get_user")
        with pytest.raises(StoreError) as exc_info:
            asyncio.run(load_account(store, "u1"))
        assert not isinstance(exc_info.value, UserNotFoundError)
        assert exc_info.value.code == "STORE_ERROR"
