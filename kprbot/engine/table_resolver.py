# KPR Bot - Table Resolver
# =========================
"""
Table Resolver
==============
Maps a free-text phrase to one allowed table name.

Strategies, first match wins:
1. Exact table name in the text (underscore and space are interchangeable)
2. Domain synonym dictionary (approval, kpr and reporting terms included)
3. The users table as a safe default
4. "" when nothing is allowed

Keywords match at the start of a word, so "dp" does not fire inside
"dapat" and "rate" does not fire inside "karate".
"""

import re
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .schema_catalog import SchemaCatalog

logger = logging.getLogger(__name__)


DEFAULT_TABLE = "users"

# Order matters: the first table whose synonym appears wins
TABLE_KEYWORDS: Dict[str, List[str]] = {
    "users": ["user", "pengguna", "nasabah", "akun", "phone", "email"],
    "roles": ["role", "hak akses", "otorisasi"],
    "branch_staff": ["staff", "pegawai cabang", "petugas", "karyawan"],
    "user_profiles": ["profil", "bio", "pendapatan", "income", "pekerjaan", "occupation"],
    "approval_workflow": ["approval", "persetujuan", "workflow", "review", "status approval"],
    "kpr_rates": [
        "rate", "bunga", "suku bunga", "kpr rate", "bunga tetap", "fixed", "floating",
        "bunga mengambang", "promo", "promosi", "ltv", "loan to value", "tenor",
        "jangka waktu", "plafon", "down payment", "dp", "prime lending rate",
    ],
    "kpr_applications": [
        "kpr", "aplikasi", "pengajuan", "application", "apply", "status pengajuan",
        "report", "laporan", "rekap", "ringkasan", "statistik", "summary",
    ],
    "properties": ["properti", "rumah", "agunan", "aset", "alamat"],
}


def _word_start_pattern(keyword: str) -> "re.Pattern":
    return re.compile(r'\b' + re.escape(keyword), re.IGNORECASE)


_KEYWORD_PATTERNS: List[Tuple[str, "re.Pattern"]] = [
    (table, _word_start_pattern(kw))
    for table, keywords in TABLE_KEYWORDS.items()
    for kw in keywords
]


@dataclass
class TableResolution:
    """Which table was picked and by which strategy."""
    table: str
    strategy: str  # exact, keyword, default, none
    matched: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return bool(self.table)


class TableResolver:
    """
    Resolves free text to an allowed table.

    Example:
        resolver = TableResolver(catalog)
        resolver.resolve("status pengajuan saya")   # "kpr_applications"
        resolver.resolve("halo", use_default=False) # ""
    """

    def __init__(self, catalog: SchemaCatalog):
        self.catalog = catalog

    def resolve(self, text: str, use_default: bool = True) -> str:
        return self.explain(text, use_default=use_default).table

    def explain(self, text: str, use_default: bool = True) -> TableResolution:
        """
        Resolve text to a table, reporting the strategy used.

        Args:
            text: Free-text question or model-supplied table name
            use_default: Fall back to the users table when nothing matches

        Returns:
            TableResolution (table is "" when unresolved)
        """
        lower = (text or "").lower()
        allowed = self.catalog.tables

        spaced = lower.replace("_", " ")
        for name in self.catalog.sorted_tables():
            if name in lower or name.replace("_", " ") in spaced:
                return TableResolution(name, "exact", name)

        for table, pattern in _KEYWORD_PATTERNS:
            if table in allowed and pattern.search(lower):
                return TableResolution(table, "keyword", pattern.pattern)

        if use_default and DEFAULT_TABLE in allowed:
            logger.debug("No table matched; using default table")
            return TableResolution(DEFAULT_TABLE, "default")

        return TableResolution("", "none")
