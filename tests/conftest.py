# Pytest configuration for KPR Bot tests
"""
Shared fixtures: the sample DDL, a schema registry, an in-memory DuckDB
store seeded with a few customers, an audit logger on a temp path, and
a composer wired from all of them.
"""

import sys
from pathlib import Path
from typing import Any, List, Optional, Sequence

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Load environment variables from .env file
from dotenv import load_dotenv
env_path = project_root / '.env'
if env_path.exists():
    load_dotenv(env_path)

from kprbot.audit import QueryAuditLogger
from kprbot.engine.answer_composer import AnswerComposer, ComposerConfig
from kprbot.engine.executor import DuckDBStore, ExecutorConfig, QueryExecutor, RelationalStore, RowCursor
from kprbot.engine.identity import IdentityResolver, IdentityStore
from kprbot.engine.llm_providers import MockProvider
from kprbot.engine.planner import QueryPlanner
from kprbot.engine.privacy_sanitizer import PrivacySanitizer, SanitizerConfig
from kprbot.engine.schema_catalog import SchemaCatalog, SchemaRegistry

DDL_PATH = project_root / "ddl.sql"

REGISTERED_PHONE = "62811000042"
SECOND_PHONE = "62811000043"
NO_APPLICATION_PHONE = "62811000044"
APPROVER_PHONE = "62811000007"
UNREGISTERED_PHONE = "62899999999"

# Same tables as ddl.sql; enum columns are VARCHAR in DuckDB
SEED_SQL = """
CREATE TABLE roles (id INTEGER, name VARCHAR, description VARCHAR, created_at TIMESTAMP);
CREATE TABLE users (
    id INTEGER, username VARCHAR, email VARCHAR, phone VARCHAR, password_hash VARCHAR,
    role_id INTEGER, status VARCHAR, last_login TIMESTAMP, created_at TIMESTAMP, updated_at TIMESTAMP
);
CREATE TABLE user_profiles (
    id INTEGER, user_id INTEGER, full_name VARCHAR, nik VARCHAR, npwp VARCHAR, birth_date DATE,
    birth_place VARCHAR, gender VARCHAR, marital_status VARCHAR, occupation VARCHAR,
    company_name VARCHAR, monthly_income DECIMAL(15,2), address VARCHAR, city VARCHAR,
    province VARCHAR, postal_code VARCHAR, created_at TIMESTAMP
);
CREATE TABLE branch_staff (
    id INTEGER, user_id INTEGER, branch_code VARCHAR, position VARCHAR, is_active BOOLEAN, created_at TIMESTAMP
);
CREATE TABLE properties (
    id INTEGER, title VARCHAR, property_type VARCHAR, address VARCHAR, city VARCHAR, province VARCHAR,
    price DECIMAL(15,2), land_area DECIMAL(10,2), building_area DECIMAL(10,2), bedrooms INTEGER,
    bathrooms INTEGER, status VARCHAR, created_at TIMESTAMP
);
CREATE TABLE kpr_rates (
    id INTEGER, rate_name VARCHAR, rate_type VARCHAR, base_rate DECIMAL(5,2), margin DECIMAL(5,2),
    fixed_period_years INTEGER, min_tenor INTEGER, max_tenor INTEGER, min_loan_amount DECIMAL(15,2),
    max_loan_amount DECIMAL(15,2), max_ltv_ratio DECIMAL(5,2), is_promo BOOLEAN, valid_from DATE,
    valid_until DATE, created_at TIMESTAMP
);
CREATE TABLE kpr_applications (
    id INTEGER, user_id INTEGER, property_id INTEGER, kpr_rate_id INTEGER, application_number VARCHAR,
    status VARCHAR, loan_amount DECIMAL(15,2), down_payment DECIMAL(15,2), property_value DECIMAL(15,2),
    ltv_ratio DECIMAL(5,2), loan_term_years INTEGER, monthly_installment DECIMAL(15,2),
    submitted_at TIMESTAMP, approved_at TIMESTAMP, rejected_at TIMESTAMP, rejection_reason VARCHAR,
    created_at TIMESTAMP, updated_at TIMESTAMP
);
CREATE TABLE approval_workflow (
    id INTEGER, application_id INTEGER, stage VARCHAR, status VARCHAR, assigned_to INTEGER,
    notes VARCHAR, due_date DATE, completed_at TIMESTAMP, created_at TIMESTAMP
);

INSERT INTO roles VALUES
    (1, 'admin', 'Administrator', '2024-01-01'),
    (2, 'nasabah', 'Customer', '2024-01-01'),
    (3, 'approver', 'Credit approver', '2024-01-01');

INSERT INTO users VALUES
    (42, 'budi', 'budi@example.com', '62811000042', 'x', 2, 'ACTIVE', NULL, '2024-02-01 09:00:00', '2024-02-01 09:00:00'),
    (43, 'sari', 'sari@example.com', '62811000043', 'x', 2, 'ACTIVE', NULL, '2024-02-02 09:00:00', '2024-02-02 09:00:00'),
    (44, 'tono', 'tono@example.com', '62811000044', 'x', 2, 'ACTIVE', NULL, '2024-02-03 09:00:00', '2024-02-03 09:00:00'),
    (7, 'rina', 'rina@bank.example', '62811000007', 'x', 3, 'ACTIVE', NULL, '2024-01-05 09:00:00', '2024-01-05 09:00:00');

INSERT INTO user_profiles VALUES
    (1, 42, 'Budi Santoso', '3171000000000042', '01.234.567.8-000.000', '1990-04-12', 'Jakarta', 'L',
     'MENIKAH', 'Karyawan Swasta', 'PT Maju', 15000000, 'Jl. Melati 1', 'Jakarta', 'DKI Jakarta', '12345',
     '2024-02-01 09:05:00'),
    (2, 43, 'Sari Dewi', '3171000000000043', NULL, '1992-08-20', 'Bandung', 'P',
     'LAJANG', 'Dokter', 'RS Sehat', 30000000, 'Jl. Mawar 2', 'Bandung', 'Jawa Barat', '40111',
     '2024-02-02 09:05:00');

INSERT INTO branch_staff VALUES (1, 7, 'JKT01', 'Analis Kredit', TRUE, '2024-01-05 09:00:00');

INSERT INTO properties VALUES
    (1, 'Rumah Griya Asri', 'RUMAH', 'Jl. Kenanga 5', 'Depok', 'Jawa Barat', 600000000, 120, 90, 3, 2, 'RESERVED', '2024-01-10'),
    (2, 'Apartemen Central', 'APARTEMEN', 'Jl. Sudirman 10', 'Jakarta', 'DKI Jakarta', 900000000, 0, 45, 2, 1, 'AVAILABLE', '2024-01-11');

INSERT INTO kpr_rates VALUES
    (1, 'Griya Fixed 3 Tahun', 'FIXED', 3.75, 0, 3, 5, 20, 100000000, 5000000000, 90, TRUE, '2024-01-01', '2024-12-31', '2024-01-01'),
    (2, 'Griya Floating', 'FLOATING', 9.50, 1.5, NULL, 5, 30, 100000000, 5000000000, 85, FALSE, '2024-01-01', NULL, '2024-01-01');

INSERT INTO kpr_applications VALUES
    (100, 42, 1, 1, 'KPR-2024-0001', 'CREDIT_ANALYSIS', 500000000, 100000000, 600000000, 83.33, 20, 4200000,
     '2024-03-01 10:00:00', NULL, NULL, NULL, '2024-03-01 10:00:00', '2024-03-05 10:00:00'),
    (101, 43, 2, 2, 'KPR-2024-0002', 'APPROVED', 700000000, 200000000, 900000000, 77.78, 15, 7100000,
     '2024-03-02 10:00:00', '2024-03-20 10:00:00', NULL, NULL, '2024-03-02 10:00:00', '2024-03-20 10:00:00');

INSERT INTO approval_workflow VALUES
    (1, 100, 'CREDIT_REVIEW', 'IN_PROGRESS', 7, 'Menunggu slip gaji', '2024-03-15', NULL, '2024-03-05 10:00:00'),
    (2, 101, 'FINAL_APPROVAL', 'APPROVED', 7, NULL, '2024-03-20', '2024-03-20 10:00:00', '2024-03-10 10:00:00');
"""


class RecordingStore(RelationalStore):
    """Wraps a store and remembers every statement it was asked to run."""

    def __init__(self, inner: RelationalStore):
        self.inner = inner
        self.statements: List[str] = []

    def query(self, sql: str, args: Sequence[Any] = (), timeout: Optional[float] = None) -> RowCursor:
        self.statements.append(sql)
        return self.inner.query(sql, args, timeout)

    def close(self):
        self.inner.close()


@pytest.fixture
def ddl_text():
    """Contents of the sample ddl.sql."""
    return DDL_PATH.read_text(encoding="utf-8")


@pytest.fixture
def catalog(ddl_text):
    return SchemaCatalog.load(ddl_text)


@pytest.fixture
def registry(catalog):
    return SchemaRegistry(str(DDL_PATH), catalog=catalog)


@pytest.fixture
def duckdb_store():
    """In-memory DuckDB store seeded with the sample rows."""
    import duckdb

    conn = duckdb.connect(":memory:")
    for statement in SEED_SQL.split(";"):
        if statement.strip():
            conn.execute(statement)
    store = DuckDBStore(connection=conn)
    yield store
    store.close()


@pytest.fixture
def store(duckdb_store):
    """Seeded store that records every statement."""
    return RecordingStore(duckdb_store)


@pytest.fixture
def audit_path(tmp_path):
    return tmp_path / "sql_audit.jsonl"


@pytest.fixture
def audit_logger(audit_path):
    return QueryAuditLogger(str(audit_path))


@pytest.fixture
def sanitizer(registry):
    return PrivacySanitizer(registry, SanitizerConfig())


@pytest.fixture
def executor(store, registry, audit_logger):
    return QueryExecutor(store, registry, audit_logger, ExecutorConfig(timeout_seconds=10))


@pytest.fixture
def mock_llm():
    """Model that answers every request with empty text."""
    return MockProvider()


@pytest.fixture
def make_composer(registry, store, audit_logger):
    """Factory building a composer over the seeded store, optionally with a model."""

    def _make(llm=None, config: Optional[ComposerConfig] = None, resolver=None):
        sanitizer = PrivacySanitizer(registry, SanitizerConfig())
        executor = QueryExecutor(store, registry, audit_logger, ExecutorConfig(timeout_seconds=10))
        return AnswerComposer(
            registry=registry,
            planner=QueryPlanner(registry, llm),
            sanitizer=sanitizer,
            executor=executor,
            llm=llm,
            identity_store=IdentityStore(),
            identity_resolver=resolver if resolver is not None else IdentityResolver(store),
            base_prompt="Aku Tanti, asisten virtual BNI.",
            config=config or ComposerConfig(),
        )

    return _make
