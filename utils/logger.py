from __future__ import annotations
import json
import logging
from typing import Any, Dict, List

__all__ = ["OracleLogger", "truncate"]


def truncate(s: Any, limit: int = 4000) -> str:
    """Safely truncate long values for logs (keeps unicode; appends ellipsis)."""
    if not isinstance(s, str):
        try:
            s = json.dumps(s, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            s = str(s)
    return s if len(s) <= limit else (s[:limit] + " …[truncated]")


class OracleLogger:
    """High-signal logging for intent oracle requests and results."""

    def __init__(self, logger: logging.Logger, strategy: str):
        self._log = logger
        self._strategy = strategy

    def request(self, stage: str, messages: List[Dict[str, Any]]):
        self._log.debug(
            "ORACLE INPUT  | strategy=%s stage=%s\n%s",
            self._strategy,
            stage,
            truncate(messages),
        )

    def tool_payload(self, stage: str, tool_name: str, payload: Dict[str, Any]):
        self._log.debug(
            "ORACLE RESP   | strategy=%s stage=%s tool=%s\n%s",
            self._strategy,
            stage,
            tool_name,
            truncate(json.dumps(payload, ensure_ascii=False, indent=2, default=str)),
        )

    def result(self, user_text: str, action: str, confidence: float, missing: List[str]):
        self._log.info(
            "ORACLE RESULT | strategy=%s action=%s conf=%.2f missing=%s",
            self._strategy, action, confidence, missing,
        )
        self._log.debug("ORACLE USER   | strategy=%s user=%s", self._strategy, truncate(user_text, 500))
