import json
import logging
from typing import Any, Dict, Optional

from .config import RuntimeConfig


def build_logger(config: RuntimeConfig) -> logging.Logger:
    config.ensure_paths()
    logger = logging.getLogger("arete.audit")
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    handler = logging.FileHandler(config.audit_log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(handler)
    return logger


def log_decision(
    logger: Optional[logging.Logger],
    message: Dict[str, Any],
    outcome: str,
    trigger: Optional[str] = None,
    decision: Optional[Dict[str, Any]] = None,
    plan: Optional[Dict[str, Any]] = None,
    action_result: Optional[Dict[str, Any]] = None,
) -> None:
    """One JSON line per handled message."""
    if logger is None:
        return
    payload = {
        "message": message,
        "outcome": outcome,
        "trigger": trigger,
        "engagement": decision,
        "plan": plan,
        "action_result": action_result,
    }
    logger.info(json.dumps(payload, ensure_ascii=False))
