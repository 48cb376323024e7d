# KPR Bot - Identity Context
# ===========================
"""
Identity Context
================
Per-phone state for the person chatting with the bot: registration status,
normalized role, the last exchange, and the one-shot privacy warning flag.

Key Capabilities:
- Concurrent store keyed by phone, one lock per phone
- Registration lookup against users/roles/user_profiles
- Short-lived cache of lookup results
- Optional idle expiry
"""

import time
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional

from .models import REDACTED

logger = logging.getLogger(__name__)


ROLES = ("guest", "user", "admin", "developer", "approver")

_ROLE_ALIASES = {
    "admin": "admin",
    "administrator": "admin",
    "developer": "developer",
    "dev": "developer",
    "approver": "approver",
    "reviewer": "approver",
    "approval": "approver",
    "user": "user",
    "nasabah": "user",
    "customer": "user",
}

REGISTRATION_CLAIMS = (
    "sudah terdaftar",
    "aku terdaftar",
    "saya terdaftar",
    "saya nasabah",
    "aku nasabah",
    "sudah jadi nasabah",
    "sudah daftar",
    "registered",
)

USER_LOOKUP_SQL = (
    "SELECT u.id, u.username, u.email, u.status, u.created_at, r.name "
    "FROM users u JOIN roles r ON r.id = u.role_id WHERE u.phone = $1 LIMIT 1"
)
PROFILE_LOOKUP_SQL = "SELECT full_name, occupation FROM user_profiles WHERE user_id = $1 LIMIT 1"


def normalize_role(name: Optional[str]) -> str:
    """Map a role name from the roles table onto guest/user/admin/developer/approver."""
    return _ROLE_ALIASES.get((name or "").strip().lower(), "guest")


def claims_registration(text: str) -> bool:
    """True when the message itself says the sender is already a customer."""
    lower = (text or "").strip().lower()
    return any(phrase in lower for phrase in REGISTRATION_CLAIMS)


def mask_phone(phone: str) -> str:
    """Keep the last four digits for log lines."""
    phone = phone or ""
    return f"***{phone[-4:]}" if len(phone) > 4 else "***"


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class IdentityContext:
    """State held for one phone number."""
    phone: str
    registered: bool = False
    role: str = "guest"
    user_id: int = 0
    context_text: str = ""
    claimed: bool = False
    warned_unregistered: bool = False
    greeted: bool = False
    last_user_text: str = ""
    last_answer_text: str = ""
    resolved_at: float = 0.0
    last_seen: float = 0.0

    def conversation_block(self) -> str:
        """Last exchange formatted for a prompt, or "" when there is none."""
        user_text = self.last_user_text.strip()
        answer_text = self.last_answer_text.strip()
        if not user_text and not answer_text:
            return ""
        lines = ["[KONTEKS PERCAKAPAN]:"]
        if user_text:
            lines.append(f"user: {user_text}")
        if answer_text:
            lines.append(f"ai: {answer_text}")
        return "\n".join(lines) + "\n"


@dataclass
class UserLookup:
    """A registered user found by phone."""
    user_id: int
    role: str
    context_text: str


# =============================================================================
# STORE
# =============================================================================

class IdentityStore:
    """
    Concurrent in-memory store of IdentityContext keyed by phone.

    Updates to one phone are serialized by that phone's lock; different
    phones never wait on each other beyond the brief lookup of the lock
    itself. Readers receive copies, so they never see a half-applied update.

    Contexts idle for longer than `idle_timeout` seconds are removed by
    `cleanup_expired()`; with no timeout they live for the process lifetime.
    """

    def __init__(self, idle_timeout: Optional[float] = None):
        self.idle_timeout = idle_timeout
        self._contexts: Dict[str, IdentityContext] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, phone: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(phone)
            if lock is None:
                lock = self._locks[phone] = threading.Lock()
            return lock

    @contextmanager
    def _locked(self, phone: str):
        """Hold the phone's current lock; retry if it was dropped while waiting."""
        while True:
            lock = self._lock_for(phone)
            lock.acquire()
            with self._guard:
                current = self._locks.get(phone) is lock
            if current:
                break
            lock.release()
        try:
            yield
        finally:
            lock.release()

    def _drop(self, phone: str):
        # Caller holds the phone lock; waiters on it will retry with a fresh one
        self._contexts.pop(phone, None)
        with self._guard:
            self._locks.pop(phone, None)

    def get(self, phone: str) -> Optional[IdentityContext]:
        if not phone:
            return None
        with self._locked(phone):
            ctx = self._contexts.get(phone)
            return replace(ctx) if ctx else None

    def update(self, phone: str, fn: Callable[[IdentityContext], None]) -> IdentityContext:
        """
        Apply `fn` to the phone's context (created if missing) under its lock.

        Returns:
            A copy of the updated context
        """
        if not phone:
            raise ValueError("phone is required")
        with self._locked(phone):
            ctx = self._contexts.get(phone)
            if ctx is None:
                ctx = self._contexts[phone] = IdentityContext(phone=phone)
            fn(ctx)
            ctx.last_seen = time.time()
            return replace(ctx)

    def remove(self, phone: str):
        with self._locked(phone):
            self._drop(phone)

    def cleanup_expired(self, now: Optional[float] = None) -> int:
        """Remove idle contexts. Returns how many were removed."""
        if not self.idle_timeout:
            return 0
        now = now if now is not None else time.time()
        with self._guard:
            phones = list(self._contexts)
        expired = 0
        for phone in phones:
            with self._locked(phone):
                ctx = self._contexts.get(phone)
                if ctx is not None and now - ctx.last_seen > self.idle_timeout:
                    self._drop(phone)
                    expired += 1
                elif ctx is None:
                    # Lock created only by this sweep
                    with self._guard:
                        self._locks.pop(phone, None)
        if expired:
            logger.info(f"Cleaned up {expired} idle identity contexts")
        return expired

    def count(self) -> int:
        with self._guard:
            return len(self._contexts)


# =============================================================================
# RESOLVER
# =============================================================================

class IdentityResolver:
    """
    Looks up a phone number in the users table.

    The phone itself never appears in the returned context text and the
    email is masked.
    """

    def __init__(self, store):
        self.store = store

    def lookup(self, phone: str) -> Optional[UserLookup]:
        """
        Find the registered user for a phone.

        Returns:
            UserLookup, or None when the phone is not registered

        Raises:
            Exception: Store errors propagate so callers do not cache them
        """
        if not phone or not phone.strip():
            return None

        cursor = self.store.query(USER_LOOKUP_SQL, [phone])
        try:
            row = next(iter(cursor), None)
        finally:
            cursor.close()
        if row is None:
            return None

        user_id, username, email, status, created_at, role_name = row
        lines = [f"user_id={user_id} username={username or ''} status={status or ''} created_at={created_at or ''}"]
        if role_name and str(role_name).strip():
            lines.append(f"role={role_name}")
        if email and str(email).strip():
            lines.append(f"email={REDACTED}")

        try:
            cursor = self.store.query(PROFILE_LOOKUP_SQL, [user_id])
            try:
                profile = next(iter(cursor), None)
            finally:
                cursor.close()
        except Exception as e:
            logger.warning(f"Profile lookup failed for user {user_id}: {e}")
            profile = None
        if profile is not None:
            full_name, occupation = profile
            lines.append(f"profile: full_name={full_name or ''} occupation={occupation or ''}")

        role = normalize_role(role_name) if role_name is not None else "user"
        return UserLookup(user_id=int(user_id), role=role, context_text="\n".join(lines))
