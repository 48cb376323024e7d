# Tests for Identity Context
"""
Test suite for the per-phone identity store and registration lookup.
"""

import sys
import threading
import time
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

from kprbot.engine.identity import (
    IdentityContext,
    IdentityResolver,
    IdentityStore,
    claims_registration,
    mask_phone,
    normalize_role,
)
from kprbot.engine.models import REDACTED

REGISTERED_PHONE = "62811000042"
NO_PROFILE_PHONE = "62811000044"
APPROVER_PHONE = "62811000007"
UNREGISTERED_PHONE = "62899999999"


class TestIdentityStore:
    """Test the concurrent per-phone store."""

    def setup_method(self):
        self.store = IdentityStore()

    def test_update_creates_context(self):
        ctx = self.store.update(REGISTERED_PHONE, lambda c: setattr(c, "registered", True))
        assert ctx.phone == REGISTERED_PHONE
        assert ctx.registered
        assert ctx.last_seen > 0
        assert self.store.count() == 1

    def test_get_missing(self):
        assert self.store.get(REGISTERED_PHONE) is None
        assert self.store.get("") is None

    def test_readers_get_copies(self):
        self.store.update(REGISTERED_PHONE, lambda c: setattr(c, "role", "user"))
        copy = self.store.get(REGISTERED_PHONE)
        copy.role = "admin"
        assert self.store.get(REGISTERED_PHONE).role == "user"

    def test_update_requires_phone(self):
        with pytest.raises(ValueError):
            self.store.update("", lambda c: None)

    def test_remove(self):
        self.store.update(REGISTERED_PHONE, lambda c: None)
        self.store.remove(REGISTERED_PHONE)
        assert self.store.get(REGISTERED_PHONE) is None
        assert self.store.count() == 0

    def test_concurrent_updates_same_phone(self):
        """Increments under the phone lock are never lost."""
        def bump(c: IdentityContext):
            c.user_id += 1

        def worker():
            for _ in range(200):
                self.store.update(REGISTERED_PHONE, bump)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert self.store.get(REGISTERED_PHONE).user_id == 1600

    def test_cleanup_without_timeout(self):
        self.store.update(REGISTERED_PHONE, lambda c: None)
        assert self.store.cleanup_expired(now=10 ** 12) == 0
        assert self.store.count() == 1

    def test_cleanup_expired(self):
        store = IdentityStore(idle_timeout=60)
        ctx = store.update(REGISTERED_PHONE, lambda c: None)
        store.update(UNREGISTERED_PHONE, lambda c: None)
        assert store.cleanup_expired(now=ctx.last_seen + 30) == 0
        assert store.cleanup_expired(now=ctx.last_seen + 3600) == 2
        assert store.count() == 0

    def test_remove_during_updates_keeps_phone_serialized(self):
        """Updates to one phone never overlap, even while it is removed and swept."""
        store = IdentityStore(idle_timeout=1e-9)
        state = {"active": 0, "peak": 0}
        counter = threading.Lock()

        def enter(c: IdentityContext):
            with counter:
                state["active"] += 1
                state["peak"] = max(state["peak"], state["active"])
            time.sleep(0.0005)
            with counter:
                state["active"] -= 1

        def updater():
            for _ in range(100):
                store.update(REGISTERED_PHONE, enter)

        def remover():
            for i in range(100):
                if i % 2:
                    store.remove(REGISTERED_PHONE)
                else:
                    store.cleanup_expired(now=10 ** 12)

        threads = [threading.Thread(target=updater) for _ in range(4)]
        threads += [threading.Thread(target=remover) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert state["peak"] == 1

    def test_remove_drops_lock(self):
        self.store.update(REGISTERED_PHONE, lambda c: None)
        self.store.remove(REGISTERED_PHONE)
        assert REGISTERED_PHONE not in self.store._locks
        self.store.update(REGISTERED_PHONE, lambda c: None)
        assert self.store.count() == 1


class TestConversationBlock:
    """Test the last-exchange prompt block."""

    def test_empty(self):
        assert IdentityContext(phone=REGISTERED_PHONE).conversation_block() == ""

    def test_both_sides(self):
        ctx = IdentityContext(phone=REGISTERED_PHONE, last_user_text="status?", last_answer_text="Masih dianalisis.")
        assert ctx.conversation_block() == "[KONTEKS PERCAKAPAN]:\nuser: status?\nai: Masih dianalisis.\n"


class TestIdentityResolver:
    """Test registration lookup on the seeded store."""

    def test_registered_customer(self, store):
        lookup = IdentityResolver(store).lookup(REGISTERED_PHONE)
        assert lookup.user_id == 42
        assert lookup.role == "user"
        assert "username=budi" in lookup.context_text
        assert "role=nasabah" in lookup.context_text
        assert f"email={REDACTED}" in lookup.context_text
        assert "profile: full_name=Budi Santoso occupation=Karyawan Swasta" in lookup.context_text

    def test_phone_and_email_not_in_context(self, store):
        lookup = IdentityResolver(store).lookup(REGISTERED_PHONE)
        assert REGISTERED_PHONE not in lookup.context_text
        assert "budi@example.com" not in lookup.context_text

    def test_approver_role(self, store):
        assert IdentityResolver(store).lookup(APPROVER_PHONE).role == "approver"

    def test_without_profile(self, store):
        lookup = IdentityResolver(store).lookup(NO_PROFILE_PHONE)
        assert lookup.user_id == 44
        assert "profile:" not in lookup.context_text

    def test_unregistered(self, store):
        assert IdentityResolver(store).lookup(UNREGISTERED_PHONE) is None
        assert len(store.statements) == 1

    def test_blank_phone_skips_store(self, store):
        assert IdentityResolver(store).lookup("  ") is None
        assert store.statements == []


class TestHelpers:
    """Test role mapping, claim detection and masking."""

    @pytest.mark.parametrize("name,expected", [
        ("admin", "admin"),
        ("Administrator", "admin"),
        ("nasabah", "user"),
        ("reviewer", "approver"),
        (" DEV ", "developer"),
        ("auditor", "guest"),
        (None, "guest"),
    ])
    def test_normalize_role(self, name, expected):
        assert normalize_role(name) == expected

    @pytest.mark.parametrize("text,expected", [
        ("Saya sudah terdaftar, cek status", True),
        ("aku nasabah lama", True),
        ("I am registered", True),
        ("mau daftar kpr", False),
        ("", False),
    ])
    def test_claims_registration(self, text, expected):
        assert claims_registration(text) is expected

    def test_mask_phone(self):
        assert mask_phone(REGISTERED_PHONE) == "***0042"
        assert mask_phone("123") == "***"
        assert mask_phone("") == "***"
