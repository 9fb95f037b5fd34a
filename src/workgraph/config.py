"""Load optional engine configuration from `.workgraph/config.yaml`."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .constants import (
    CONFIG_FILE,
    DEFAULT_AUDITOR_TIMEOUT_SECONDS,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MAX_EFFORT,
    DEFAULT_MAX_VERIFICATION_ATTEMPTS,
    DEFAULT_MAX_WORKERS,
    DEFAULT_VERIFY_TIMEOUT_SECONDS,
    STATE_DIR_NAME,
)
from .io_utils import _load_data_with_error
from .utils import _coerce_int

VALID_EFFORTS = ("XS", "S", "M", "L", "XL")
VALID_LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


@dataclass
class EngineConfig:
    """Tunables for the orchestrator and its collaborators."""

    max_verification_attempts: int = DEFAULT_MAX_VERIFICATION_ATTEMPTS
    max_effort: str = DEFAULT_MAX_EFFORT
    verify_timeout_seconds: int = DEFAULT_VERIFY_TIMEOUT_SECONDS
    auditor_timeout_seconds: int = DEFAULT_AUDITOR_TIMEOUT_SECONDS
    max_workers: int = DEFAULT_MAX_WORKERS
    log_level: str = DEFAULT_LOG_LEVEL
    log_file: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_engine_config_file(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional config file.

    Args:
        project_dir: Project root directory (the parent of `.workgraph/`).

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    path = project_dir.resolve() / STATE_DIR_NAME / CONFIG_FILE
    if not path.exists():
        return {}, None
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def parse_engine_config(raw: dict[str, Any], env: Optional[dict[str, str]] = None) -> EngineConfig:
    """Build an :class:`EngineConfig` from the `engine` and `logging` blocks.

    Invalid values fall back to defaults; environment variables
    ``WORKGRAPH_LOG_LEVEL`` and ``WORKGRAPH_MAX_VERIFICATION_ATTEMPTS`` win
    over the file.
    """
    env = dict(os.environ) if env is None else env
    cfg = EngineConfig()

    engine = _get_nested(raw, "engine")
    engine = engine if isinstance(engine, dict) else {}
    attempts = _coerce_int(engine.get("max_verification_attempts"), cfg.max_verification_attempts)
    if attempts >= 1:
        cfg.max_verification_attempts = attempts
    effort = engine.get("max_effort")
    if isinstance(effort, str) and effort.upper() in VALID_EFFORTS:
        cfg.max_effort = effort.upper()
    verify_timeout = _coerce_int(_get_nested(raw, "verify", "timeout_seconds"), cfg.verify_timeout_seconds)
    if verify_timeout > 0:
        cfg.verify_timeout_seconds = verify_timeout
    auditor_timeout = _coerce_int(_get_nested(raw, "auditors", "timeout_seconds"), cfg.auditor_timeout_seconds)
    if auditor_timeout > 0:
        cfg.auditor_timeout_seconds = auditor_timeout
    workers = _coerce_int(engine.get("max_workers"), cfg.max_workers)
    if workers >= 1:
        cfg.max_workers = workers

    logging_cfg = _get_nested(raw, "logging")
    logging_cfg = logging_cfg if isinstance(logging_cfg, dict) else {}
    level = logging_cfg.get("level")
    if isinstance(level, str) and level.upper() in VALID_LOG_LEVELS:
        cfg.log_level = level.upper()
    log_file = logging_cfg.get("file")
    if isinstance(log_file, str) and log_file.strip():
        cfg.log_file = log_file.strip()

    env_level = (env.get("WORKGRAPH_LOG_LEVEL") or "").upper()
    if env_level in VALID_LOG_LEVELS:
        cfg.log_level = env_level
    env_attempts = _coerce_int(env.get("WORKGRAPH_MAX_VERIFICATION_ATTEMPTS"), 0)
    if env_attempts >= 1:
        cfg.max_verification_attempts = env_attempts
    return cfg


def load_engine_config(project_dir: Path) -> EngineConfig:
    raw, err = load_engine_config_file(project_dir)
    if err:
        logger.warning("Ignoring unreadable config.yaml: {}", err)
    return parse_engine_config(raw)
