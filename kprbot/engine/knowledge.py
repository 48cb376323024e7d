# KPR Bot - Knowledge Prompt
# ===========================
"""
Base prompt for answer composition: fixed persona instructions, the
product knowledge file, and the head of the DDL so the model knows which
columns exist.
"""

import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


DDL_PROMPT_LINES = 245

PERSONA_INSTRUCTIONS = """Aku Tanti, asisten virtual BNI untuk KPR BNI Griya.
Jawab dengan bahasa Indonesia natural, ramah, dan to the point.
Hindari format kaku; berikan jawaban langsung.
Gunakan data sistem sebagai konteks secara aman jika tersedia; jangan tampilkan data sensitif.
Jika pengguna sudah teridentifikasi lewat nomor WhatsApp, jawab langsung pakai data yang ada tanpa meminta informasi tambahan.
Untuk pertanyaan seperti jumlah pinjaman, angsuran bulanan, tenor, status, dan bunga: berikan nilai spesifik dari [FAKTA] secara ringkas.
Jangan tulis kalimat proses seperti "sedang saya cek" atau "mohon tunggu"; langsung berikan hasilnya.
Jawab hanya berdasarkan [FAKTA] dan [KONTEKS DATA] yang disediakan sistem. Jika [FAKTA] kosong untuk pertanyaan berbasis data, jawab singkat bahwa data tidak tersedia; jangan mengarang."""

COMMON_NEEDS = (
    "Contoh kebutuhan umum: status aplikasi, plafon pinjaman, angsuran bulanan, tenor, bunga, promo aktif. "
    "Gunakan kolom yang relevan dari kpr_applications, kpr_rates, approval_workflow."
)


def _read_text(path: Optional[str]) -> Optional[str]:
    if not path:
        return None
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Could not read {path}: {e}")
        return None


def load_base_prompt(prompt_path: Optional[str], ddl_path: Optional[str] = None) -> str:
    """
    Build the base prompt.

    Args:
        prompt_path: Product knowledge file
        ddl_path: DDL file; defaults to ddl.sql next to the knowledge file

    Returns:
        Persona instructions, plus knowledge and DDL head when readable
    """
    knowledge = _read_text(prompt_path)
    if knowledge is None:
        return PERSONA_INSTRUCTIONS

    if ddl_path is None and prompt_path:
        ddl_path = str(Path(prompt_path).parent / "ddl.sql")
    ddl = _read_text(ddl_path)

    base = f"{PERSONA_INSTRUCTIONS}\nBerikut adalah knowledge yang diberikan:\n{knowledge.strip()}"
    if ddl:
        head = "\n".join(ddl.splitlines()[:DDL_PROMPT_LINES])
        base += f"\n\nSkema basis data (DDL ringkas):\n{head}\n\n{COMMON_NEEDS}"
    return base
