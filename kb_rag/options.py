"""Runtime RAG options: environment defaults overlaid with rag_settings rows.

load_rag_options() is called once per indexing run and once per retrieval request;
the returned RagOptions is immutable so one run never sees a half-updated setting.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from kb_rag.config import Settings, settings
from kb_rag.models import RagSetting

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RagOptions:
    chunk_size: int = 1024
    chunk_overlap: int = 200
    top_k: int = 5
    min_score: float = 0.0
    allowed_hosts: List[str] = field(default_factory=list)
    strict_mode: bool = True
    super_strict_mode: bool = False
    refuse_without_context: bool = False
    no_data_message: str = ""
    normal_preamble: str = ""
    strict_preamble: str = ""
    super_strict_preamble: str = ""
    temperature: float = 0.05
    max_output_tokens: int = 2000


def _parse_bool(value: str) -> bool:
    v = value.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def parse_hosts(value: str) -> List[str]:
    """Split a comma/newline separated host list into normalized host names."""
    hosts = []
    for raw in value.replace("\n", ",").split(","):
        h = raw.strip().lower()
        if h.startswith("www."):
            h = h[4:]
        if h:
            hosts.append(h)
    return hosts


def _text(value: str) -> str:
    return value


# rag_settings key -> (RagOptions field, parser)
OVERRIDE_KEYS: Dict[str, tuple] = {
    "rag_chunk_size": ("chunk_size", int),
    "rag_chunk_overlap": ("chunk_overlap", int),
    "rag_top_k": ("top_k", int),
    "rag_min_score": ("min_score", float),
    "rag_allowed_hosts": ("allowed_hosts", parse_hosts),
    "rag_strict_mode": ("strict_mode", _parse_bool),
    "rag_super_strict_mode": ("super_strict_mode", _parse_bool),
    "rag_refuse_without_context": ("refuse_without_context", _parse_bool),
    "ai_no_data_message": ("no_data_message", _text),
    "rag_normal_preamble": ("normal_preamble", _text),
    "rag_strict_preamble": ("strict_preamble", _text),
    "rag_super_strict_preamble": ("super_strict_preamble", _text),
    "rag_temperature": ("temperature", float),
    "rag_max_output_tokens": ("max_output_tokens", int),
}


def defaults_from_settings(cfg: Settings = settings) -> Dict[str, object]:
    return {
        "chunk_size": cfg.CHUNK_SIZE,
        "chunk_overlap": cfg.CHUNK_OVERLAP,
        "top_k": cfg.TOP_K,
        "min_score": cfg.MIN_SCORE,
        "allowed_hosts": parse_hosts(cfg.ALLOWED_SOURCE_HOSTS),
        "strict_mode": cfg.STRICT_MODE,
        "super_strict_mode": cfg.SUPER_STRICT_MODE,
        "refuse_without_context": cfg.REFUSE_WITHOUT_CONTEXT,
        "no_data_message": cfg.NO_DATA_MESSAGE,
        "normal_preamble": cfg.NORMAL_PREAMBLE,
        "strict_preamble": cfg.STRICT_PREAMBLE,
        "super_strict_preamble": cfg.SUPER_STRICT_PREAMBLE,
        "temperature": cfg.ANSWER_TEMPERATURE,
        "max_output_tokens": cfg.MAX_OUTPUT_TOKENS,
    }


def load_rag_options(db: Optional[Session] = None, cfg: Settings = settings) -> RagOptions:
    """Build the options snapshot for one run.

    Args:
        db: Session used to read rag_settings overrides; None uses env defaults only.
        cfg: Settings holding the defaults.

    Returns:
        RagOptions: Immutable snapshot. Unparseable or out-of-range overrides are
            logged and ignored.
    """
    values = defaults_from_settings(cfg)
    if db is not None:
        try:
            rows = db.query(RagSetting).filter(RagSetting.key.in_(list(OVERRIDE_KEYS))).all()
        except SQLAlchemyError as e:
            logger.warning("Could not read rag_settings, using defaults: %s", e)
            rows = []
        for row in rows:
            if row.value is None:
                continue
            name, parse = OVERRIDE_KEYS[row.key]
            try:
                values[name] = parse(row.value)
            except ValueError:
                logger.warning("Ignoring invalid rag setting %s=%r", row.key, row.value)

    if not 0 < values["chunk_overlap"] < values["chunk_size"]:
        logger.warning(
            "Invalid chunk parameters size=%s overlap=%s; using defaults",
            values["chunk_size"], values["chunk_overlap"],
        )
        values["chunk_size"], values["chunk_overlap"] = cfg.CHUNK_SIZE, cfg.CHUNK_OVERLAP
    if values["top_k"] < 1:
        values["top_k"] = cfg.TOP_K
    if not values["no_data_message"]:
        values["no_data_message"] = cfg.NO_DATA_MESSAGE
    return RagOptions(**values)


