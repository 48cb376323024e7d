# KPR Bot - Answer Composer
# ==========================
"""
Answer Composer
===============
Orchestrates one question end to end:

1. Classify data intent (greetings never are; data/status keywords are)
2. Resolve the asking identity (registration, role, one-shot warning)
3. Plan -> personalize -> sanitize -> execute, only for data intent
4. Compose the answer, grounded only in the redacted projection

Any refusal or store failure turns into a natural-language answer without
data; raw error text never reaches the user. Without a language model the
composer answers from fixed Indonesian templates and the projection itself.
"""

import re
import time
import logging
import threading
from dataclasses import dataclass, replace
from typing import List, Optional

from .errors import ForbiddenOperationError, KPRBotError, LLMError, UnresolvedTableError
from .executor import QueryExecutor
from .identity import IdentityContext, IdentityResolver, IdentityStore, claims_registration, mask_phone
from .llm_providers import BaseLLMProvider
from .models import NO_RESULTS, REDACTED, AnswerResult, ExecutionResult, QueryPlan
from .planner import QueryPlanner, ensure_columns_for_intent
from .policy import REDACTED_COLUMNS, can_join_users, is_sensitive_table
from .privacy_sanitizer import PrivacySanitizer
from .schema_catalog import SchemaRegistry
from .sql_guard import inspect_raw_sql

logger = logging.getLogger(__name__)


# =============================================================================
# FIXED TEXT
# =============================================================================

INTRO = "Halo! Aku Tanti, asisten virtual BNI. Aku siap bantu soal KPR BNI Griya.\n"
GREETING_ANSWER = INTRO + "Silakan tanya seputar KPR ya."
NON_DATA_ANSWER = "Silakan tanya seputar KPR. Akses data tidak diperlukan untuk pertanyaan ini."
UNREGISTERED_FIRST = (
    "Nomor ini belum terdaftar sebagai nasabah. Kamu tetap bisa tanya soal KPR, "
    "tapi permintaan akses data tidak bisa diproses."
)
UNREGISTERED_REPEAT = (
    "Kamu bisa tanya apa saja soal KPR. Akses data pribadi tidak tersedia untuk nomor yang belum terdaftar."
)
NOT_FOUND_APP = "{app} tidak ketemu. Cek lagi nomornya ya. Kalau mau, kirim 'list pengajuan' biar aku tampilkan semua."
NOT_FOUND = "Data tidak ketemu. Cek lagi ya, atau kirim 'list pengajuan' untuk daftar milik kamu."
NO_DATA = "Tidak ada data."

FACTS_HEADER = (
    "[FAKTA]: Gunakan hanya informasi pada bagian ini. "
    "Jika angka/kolom tidak ada di [FAKTA], jangan mengarang atau menyimpulkan."
)
EMPTY_FACTS_NOTE = "[CATATAN]: Data yang diminta tidak ditemukan. Sampaikan dengan singkat tanpa mengarang."
NON_DATA_NOTE = "[CATATAN]: Pertanyaan ini tidak memerlukan akses data."
REFUSAL_NOTE = "[CATATAN PRIVASI]: Akses data ditolak atau tidak tersedia untuk pertanyaan ini. Jawab tanpa data pribadi."
UNREGISTERED_NOTE = (
    "[KONTEKS PRIVASI]: Nomor belum terdaftar; permintaan akses data ditolak. "
    "Jawab pertanyaan umum KPR tanpa data pribadi."
)
UNKNOWN_USER_CONTEXT = "User tidak ditemukan untuk nomor ini."

GREETINGS = (
    "halo", "hai", "hi", "hello", "assalamualaikum",
    "selamat pagi", "selamat siang", "selamat sore", "selamat malam",
)
DATA_KEYWORDS = (
    "status", "profil", "akun", "riwayat", "pengajuan", "aplikasi", "application",
    "lihat", "tampilkan", "detail", "data", "email", "phone", "telepon", "nomor", "id",
    "username", "kpr", "approval", "workflow", "summary", "laporan", "report",
)
# Matched as whole words only
_WHOLE_WORD = {"id", "hi", "hai"}


def _keyword_pattern(keyword: str) -> "re.Pattern":
    suffix = r'\b' if keyword in _WHOLE_WORD else ''
    return re.compile(r'\b' + re.escape(keyword) + suffix, re.IGNORECASE)


_GREETING_PATTERNS = [(g, _keyword_pattern(g)) for g in GREETINGS]
_DATA_PATTERNS = [_keyword_pattern(k) for k in DATA_KEYWORDS]
_APP_NUMBER = re.compile(r'KPR[-A-Z0-9_]*-?[0-9]+')
_FACT_PAIR = re.compile(r'(\w+)=(.*?)(?=\s+\w+=|$)')


# =============================================================================
# HELPERS
# =============================================================================

def is_greeting(text: str) -> bool:
    """Short text built around a greeting."""
    lower = (text or "").strip().lower()
    return any(p.search(lower) and len(lower) <= len(g) + 10 for g, p in _GREETING_PATTERNS)


def is_data_intent(text: str) -> bool:
    """
    Decide whether a question needs the store.

    Short greetings never do; otherwise any data/status keyword does.
    """
    lower = (text or "").strip().lower()
    if not lower or is_greeting(lower):
        return False
    return any(p.search(lower) for p in _DATA_PATTERNS)


def extract_app_number(text: str) -> str:
    """Application number such as KPR-2024-0001 mentioned in the text, or ""."""
    match = _APP_NUMBER.search((text or "").upper())
    return match.group(0) if match else ""


def build_facts(projection: str, relaxed: bool = False) -> str:
    """
    Re-read a `col=value` projection into fact lines.

    Sensitive keys (and anything already redacted) are dropped entirely.
    """
    lines = []
    for line in (projection or "").splitlines():
        line = line.strip()
        if not line or line == NO_RESULTS:
            continue
        kept = []
        for key, value in _FACT_PAIR.findall(line):
            key = key.lower()
            value = value.strip().strip(",")
            if not relaxed and (key in REDACTED_COLUMNS or value == REDACTED):
                continue
            kept.append(f"{key}={value}")
        if kept:
            lines.append(" ".join(kept))
    return "\n".join(lines)


@dataclass
class ComposerConfig:
    """Configuration for answer composition."""
    # Include the raw projection in the model prompt, not only the facts
    llm_can_see_data: bool = False

    # Trusted deployments only: append the projection to model answers
    relaxed: bool = False

    # Seconds a registration lookup stays valid
    identity_cache_ttl: float = 300.0


@dataclass
class _DataOutcome:
    """What the data pipeline produced for one question."""
    table: Optional[str] = None
    result: Optional[ExecutionResult] = None
    refusal: Optional[KPRBotError] = None

    @property
    def projection(self) -> str:
        if self.result is None or not self.result.success:
            return ""
        return self.result.text.strip()

    @property
    def has_rows(self) -> bool:
        return self.result is not None and self.result.success and self.result.row_count > 0

    @property
    def row_count(self) -> int:
        return self.result.row_count if self.result is not None and self.result.success else 0


# =============================================================================
# COMPOSER
# =============================================================================

class AnswerComposer:
    """
    Answers questions, with or without a known identity.

    Example:
        composer = AnswerComposer(registry, planner, sanitizer, executor)
        result = composer.answer_for_identity("62811...", "status pengajuan saya")
        print(result.answer)
    """

    def __init__(self,
                 registry: SchemaRegistry,
                 planner: QueryPlanner,
                 sanitizer: PrivacySanitizer,
                 executor: QueryExecutor,
                 llm: Optional[BaseLLMProvider] = None,
                 identity_store: Optional[IdentityStore] = None,
                 identity_resolver: Optional[IdentityResolver] = None,
                 base_prompt: str = "",
                 config: Optional[ComposerConfig] = None):
        self.registry = registry
        self.planner = planner
        self.sanitizer = sanitizer
        self.executor = executor
        self.llm = llm
        self.identity_store = identity_store or IdentityStore()
        self.identity_resolver = identity_resolver
        self.base_prompt = base_prompt
        self.config = config or ComposerConfig()

    # ------------------------------------------------------------------
    # Anonymous flow
    # ------------------------------------------------------------------

    def answer(self, text: str, cancel_event: Optional[threading.Event] = None) -> AnswerResult:
        """
        Answer without an identity. Sensitive tables stay unreachable
        unless the question itself carries an identity filter.
        """
        wants_data = is_data_intent(text)
        outcome = _DataOutcome()
        if wants_data:
            outcome = self._fetch(text, ctx=None, cancel_event=cancel_event)

        if self.llm is None:
            answer = self._template_answer(text, wants_data, outcome, user_context="")
            return self._result(answer, wants_data, outcome)

        sections = [self.base_prompt]
        sections += self._data_sections(text, wants_data, outcome)
        reply = self._ask_model(sections, text)
        if reply is None:
            answer = self._template_answer(text, wants_data, outcome, user_context="")
            return self._result(answer, wants_data, outcome)

        lower = reply.strip().lower()
        if not (lower.startswith("halo") and "tanti" in lower):
            reply = INTRO + reply
        if self.config.relaxed and outcome.has_rows:
            reply = f"{reply}\n{outcome.projection}"
        return self._result(reply, wants_data, outcome)

    # ------------------------------------------------------------------
    # Identity-scoped flow
    # ------------------------------------------------------------------

    def answer_for_identity(self,
                            phone: str,
                            text: str,
                            cancel_event: Optional[threading.Event] = None) -> AnswerResult:
        """
        Answer a question from a known phone number.

        Unregistered numbers that do not claim registration never reach the
        store and get the privacy notice once. Registered numbers get their
        plans scoped to themselves through injected identity filters.
        """
        if not phone:
            return self.answer(text, cancel_event=cancel_event)

        ctx = self.resolve_identity(phone, text)
        logger.info(
            f"Question from {mask_phone(phone)}: registered={ctx.registered} "
            f"claimed={ctx.claimed} role={ctx.role}"
        )

        if not ctx.registered and not ctx.claimed:
            return self._answer_unregistered(ctx, text)

        wants_data = is_data_intent(text)
        user_context = ctx.context_text

        if not wants_data:
            if self.llm is None:
                answer = GREETING_ANSWER if is_greeting(text) else NON_DATA_ANSWER
            else:
                sections = [self.base_prompt, self._user_section(user_context), ctx.conversation_block(), NON_DATA_NOTE]
                answer = self._ask_model(sections, text) or NON_DATA_ANSWER
            self._remember(phone, text, answer)
            return AnswerResult(answer=answer, data_intent=False)

        outcome = self._fetch(text, ctx=ctx, cancel_event=cancel_event)

        if self.llm is None:
            answer = self._template_answer(text, wants_data, outcome, user_context)
        else:
            sections = [self.base_prompt, self._user_section(user_context), ctx.conversation_block()]
            sections += self._data_sections(text, wants_data, outcome)
            reply = self._ask_model(sections, text)
            if reply is None:
                answer = self._template_answer(text, wants_data, outcome, user_context)
            else:
                answer = reply
                if self.config.relaxed and outcome.has_rows:
                    answer = f"{answer}\n{outcome.projection}"

        self._remember(phone, text, answer)
        return self._result(answer, wants_data, outcome)

    def _answer_unregistered(self, ctx: IdentityContext, text: str) -> AnswerResult:
        already_warned = ctx.warned_unregistered
        if not already_warned:
            self.identity_store.update(ctx.phone, lambda c: setattr(c, "warned_unregistered", True))

        fallback = UNREGISTERED_REPEAT if already_warned else UNREGISTERED_FIRST
        if self.llm is None:
            return AnswerResult(answer=fallback, data_intent=is_data_intent(text), refusal="unregistered")

        sections = [self.base_prompt, self._user_section(UNKNOWN_USER_CONTEXT), ctx.conversation_block()]
        if not already_warned:
            sections.append(UNREGISTERED_NOTE)
        reply = self._ask_model(sections, text)
        if reply is None:
            return AnswerResult(answer=fallback, data_intent=is_data_intent(text), refusal="unregistered")
        self._remember(ctx.phone, text, reply)
        return AnswerResult(answer=reply, data_intent=is_data_intent(text), refusal="unregistered")

    def resolve_identity(self, phone: str, text: str) -> IdentityContext:
        """
        Refresh registration state for a phone, using the cached lookup while fresh.

        The registration claim comes from the message text only and sticks
        for the rest of the conversation. The warning flag is never reset here.
        """
        claimed = claims_registration(text)
        current = self.identity_store.get(phone)
        now = time.time()
        fresh = (
            current is not None
            and current.resolved_at > 0
            and now - current.resolved_at < self.config.identity_cache_ttl
        )
        if fresh:
            if claimed and not current.claimed:
                return self.identity_store.update(phone, lambda c: setattr(c, "claimed", True))
            return current

        lookup = None
        lookup_ok = False
        if self.identity_resolver is not None:
            try:
                lookup = self.identity_resolver.lookup(phone)
                lookup_ok = True
            except Exception as e:
                logger.warning(f"Identity lookup failed for {mask_phone(phone)}: {e}")

        def apply(c: IdentityContext):
            c.claimed = c.claimed or claimed
            if lookup is not None:
                c.registered = True
                c.user_id = lookup.user_id
                c.role = lookup.role
                c.context_text = lookup.context_text
            else:
                c.registered = False
                c.user_id = 0
                c.role = "user" if c.claimed else "guest"
                c.context_text = ""
            if lookup_ok:
                c.resolved_at = now

        return self.identity_store.update(phone, apply)

    # ------------------------------------------------------------------
    # Planning helpers
    # ------------------------------------------------------------------

    def personalize(self, plan: QueryPlan, ctx: IdentityContext) -> QueryPlan:
        """
        Scope a plan to the asking identity.

        user_profiles/kpr_applications/branch_staff get user_id, approval_workflow
        gets assigned_to, users gets phone; tables joined to users also get phone.
        These values always come from the identity: a model-supplied filter on
        the same column is replaced. The table is admitted first so synonyms
        are scoped like the table they map to.
        """
        if plan.is_raw:
            return plan
        try:
            table = self.sanitizer.admit_table(plan.table, self.registry.current())
        except UnresolvedTableError:
            return plan
        if table != plan.table:
            plan = replace(plan, table=table)

        if table in ("user_profiles", "kpr_applications", "branch_staff") and ctx.user_id > 0:
            plan = plan.with_filter("user_id", str(ctx.user_id))
        elif table == "approval_workflow" and ctx.user_id > 0:
            plan = plan.with_filter("assigned_to", str(ctx.user_id))
        elif table == "users" and ctx.phone:
            plan = plan.with_filter("phone", ctx.phone)

        if can_join_users(table) and ctx.phone:
            plan = plan.with_filter("phone", ctx.phone)
        return plan

    def _scope_raw_plan(self, plan: QueryPlan) -> QueryPlan:
        """Raw SQL over sensitive tables is replaced by its structured form."""
        if not plan.is_raw:
            return plan
        try:
            tables = inspect_raw_sql(plan.raw_sql, self.registry.current())
        except ForbiddenOperationError:
            return plan
        sensitive = [t for t in tables if is_sensitive_table(t)]
        if not sensitive:
            return plan
        structured = plan.as_structured()
        if not structured.table:
            structured.table = sensitive[0]
        logger.info(f"Raw plan over {structured.table} demoted to structured form")
        return structured

    def _fetch(self, text: str, ctx: Optional[IdentityContext],
               cancel_event: Optional[threading.Event] = None) -> _DataOutcome:
        """Plan, scope to the identity (when known), sanitize and execute."""
        try:
            plan = ensure_columns_for_intent(text, self.planner.plan(text))
        except ForbiddenOperationError as e:
            logger.warning(f"Planned operation refused: {e}")
            return _DataOutcome(refusal=e)
        if ctx is None:
            return self._run_plan(plan, phone="", cancel_event=cancel_event)
        plan = self.personalize(self._scope_raw_plan(plan), ctx)
        return self._run_plan(plan, phone=ctx.phone, cancel_event=cancel_event)

    def _run_plan(self, plan: QueryPlan, phone: str,
                  cancel_event: Optional[threading.Event] = None) -> _DataOutcome:
        catalog = self.registry.current()
        try:
            sanitized = self.sanitizer.sanitize(plan, catalog)
            result = self.executor.execute(sanitized, phone=phone, cancel_event=cancel_event)
        except KPRBotError as e:
            logger.info(f"Data access refused: {type(e).__name__}: {e}")
            return _DataOutcome(table=plan.table or None, refusal=e)
        if not result.success:
            return _DataOutcome(table=sanitized.table, result=result, refusal=result.error)
        return _DataOutcome(table=sanitized.table, result=result)

    # ------------------------------------------------------------------
    # Composition helpers
    # ------------------------------------------------------------------

    def _template_answer(self, text: str, wants_data: bool, outcome: _DataOutcome, user_context: str) -> str:
        if not wants_data:
            return GREETING_ANSWER if is_greeting(text) else NON_DATA_ANSWER
        if outcome.refusal is not None:
            return outcome.refusal.user_message
        if outcome.result is not None and outcome.row_count == 0:
            app = extract_app_number(text)
            return NOT_FOUND_APP.format(app=app) if app else NOT_FOUND
        if outcome.projection:
            return outcome.projection
        return user_context or NO_DATA

    def _data_sections(self, text: str, wants_data: bool, outcome: _DataOutcome) -> List[str]:
        if not wants_data:
            return [NON_DATA_NOTE]
        if outcome.refusal is not None:
            return [REFUSAL_NOTE]
        if not outcome.has_rows:
            return [EMPTY_FACTS_NOTE]
        sections = [f"{FACTS_HEADER}\n{build_facts(outcome.projection, self.config.relaxed)}"]
        if self.config.llm_can_see_data:
            sections.append(f"[KONTEKS DATA]:\n{outcome.projection}")
        return sections

    @staticmethod
    def _user_section(user_context: str) -> str:
        return f"[KONTEKS USER]:\n{user_context}" if user_context else ""

    def _ask_model(self, sections: List[str], text: str) -> Optional[str]:
        """Send the composed prompt; None when the model fails or says nothing."""
        prompt = "\n\n".join(s.strip() for s in sections if s and s.strip())
        prompt = f"{prompt}\n\n[PERTANYAAN USER]: {text}" if prompt else f"[PERTANYAAN USER]: {text}"
        try:
            reply = self.llm.complete(prompt)
        except LLMError as e:
            logger.warning(f"Answer generation failed: {e}")
            return None
        reply = (reply or "").strip()
        return reply or None

    def _remember(self, phone: str, text: str, answer: str):
        def apply(c: IdentityContext):
            c.last_user_text = text
            c.last_answer_text = answer
            c.greeted = True
        self.identity_store.update(phone, apply)

    @staticmethod
    def _result(answer: str, wants_data: bool, outcome: _DataOutcome) -> AnswerResult:
        refusal = type(outcome.refusal).__name__ if outcome.refusal is not None else None
        return AnswerResult(
            answer=answer,
            data_intent=wants_data,
            table=outcome.table,
            row_count=outcome.row_count,
            refusal=refusal,
        )
