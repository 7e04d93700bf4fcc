"""
Intent oracle
-------------
One interface, `IntentOracle.interpret(message, snapshot) -> Intent`, with two
OpenAI-backed strategies selected by `build_oracle(settings)`:

  - OpenAIIntentOracle         one forced `report_intent` tool call
  - StagedOpenAIIntentOracle   `classify_intent`, then an action-specific `report_entities` call

Both share `build_intent`, which validates the action, clamps confidence,
coerces numbers and turns date phrases into UTC datetimes. Oracles raise on
failure; the dialogue controller downgrades any failure to UNKNOWN.
"""
from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from agents.intents import Intent, IntentAction, IntentEntities
from agents.state import DialogueSnapshot
from business_profile import business_context_text, normalize_product_name
from common.dates import as_tz, parse_date_range, parse_sale_date
from constants.prompts.oracle_prompts import (
    ACTION_ENTITY_FIELDS,
    build_classifier_prompt,
    build_entity_prompt,
    build_oracle_prompt,
    classify_intent_tool,
    report_entities_tool,
    report_intent_tool,
)
from utils.logger import OracleLogger

logger = logging.getLogger("sales-ledger")


class OracleFailure(Exception):
    """The oracle produced no usable intent (no tool call, bad JSON, transport error)."""


class IntentOracle(ABC):
    @abstractmethod
    async def interpret(self, message: str, snapshot: DialogueSnapshot) -> Intent:
        ...


# ---------- post-processing ----------
def _text(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = " ".join(str(v).split())
    return s or None


def parse_number(v: Any) -> Optional[float]:
    """Accepts 40, "40", "$40", "1,234.50", "40,50"."""
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return float(v)
    s = re.sub(r"[^\d.,-]", "", str(v))
    if "," in s and "." in s:
        s = s.replace(",", "")
    elif "," in s:
        s = s.replace(",", ".")
    try:
        return float(s)
    except ValueError:
        return None


def _sale_number(v: Any) -> Optional[int]:
    n = parse_number(v)
    if n is None or n < 1 or not float(n).is_integer():
        return None
    return int(n)


def _coerce_action(v: Any) -> IntentAction:
    if isinstance(v, IntentAction):
        return v
    try:
        return IntentAction(str(v or "").strip().upper())
    except ValueError:
        return IntentAction.UNKNOWN


def _confidence(v: Any) -> float:
    n = parse_number(v)
    if n is None:
        return 0.0
    if n > 1.0:  # percent slipped through
        n = n / 100.0
    return max(0.0, min(1.0, n))


def build_intent(
    action: Any,
    confidence: Any,
    raw: Dict[str, Any],
    message: str,
    *,
    now: Optional[datetime] = None,
    tz: Any = None,
) -> Intent:
    act = _coerce_action(action)
    zone = as_tz(tz)

    quantity = parse_number(raw.get("quantity"))
    if quantity is not None and quantity <= 0:
        quantity = None
    entities: Dict[str, Any] = {
        "product": normalize_product_name(_text(raw.get("product"))),
        "quantity": quantity,
        "price_per_unit": parse_number(raw.get("price_per_unit")),
        "total_price": parse_number(raw.get("total_price")),
        "salesperson": _text(raw.get("salesperson")),
        "notes": _text(raw.get("notes")),
        "customer_name": _text(raw.get("customer_name")),
        "customer_document": _text(raw.get("customer_document")),
        "customer_address": _text(raw.get("customer_address")),
        "customer_notes": _text(raw.get("customer_notes")),
        "sale_number": _sale_number(raw.get("sale_number")),
    }
    ctype = (_text(raw.get("customer_type")) or "").upper()
    entities["customer_type"] = ctype if ctype in ("PERSON", "BUSINESS") else None

    date_phrase = _text(raw.get("sale_date"))
    if date_phrase:
        parsed = parse_sale_date(date_phrase, now=now, tz=zone)
        entities["sale_date"] = parsed.value
        if parsed.ambiguous:
            logger.info("Ambiguous sale date %r -> %s", date_phrase, parsed.value.isoformat())

    period = _text(raw.get("period"))
    if act == IntentAction.LIST_SALES:
        rng = parse_date_range(period, now=now, tz=zone) if period else None
        if rng is None:
            rng = parse_date_range(message, now=now, tz=zone)
        if rng:
            entities["start_date"], entities["end_date"] = rng

    missing = raw.get("missing_fields") or []
    if not isinstance(missing, list):
        missing = [missing]

    return Intent(
        action=act,
        confidence=_confidence(confidence),
        entities=IntentEntities.model_validate({k: v for k, v in entities.items() if v is not None}),
        missing_fields=[str(m) for m in missing if m],
        original_message=message,
    )


# ---------- OpenAI strategies ----------
class OpenAIIntentOracle(IntentOracle):
    strategy = "single"

    def __init__(
        self,
        client: AsyncOpenAI,
        *,
        model: str = "gpt-4o-mini",
        timezone: str = "UTC",
        timeout: float = 20.0,
    ):
        self._client = client
        self.model = model
        self.tz = as_tz(timezone)
        self.timeout = timeout
        self._log = OracleLogger(logger, self.strategy)

    def _today(self, now: Optional[datetime] = None) -> str:
        local = (now or datetime.now(self.tz)).astimezone(self.tz)
        return local.strftime("%A, %Y-%m-%d")

    async def _call_tool(self, stage: str, system: str, message: str, tool: Dict[str, Any]) -> Dict[str, Any]:
        name = tool["function"]["name"]
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": system},
            {"role": "user", "content": message},
        ]
        self._log.request(stage, messages)
        resp = await self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            tools=[tool],
            tool_choice={"type": "function", "function": {"name": name}},
            temperature=0,
            timeout=self.timeout,
        )
        choices = getattr(resp, "choices", None) or []
        msg = choices[0].message if choices else None
        tool_calls = getattr(msg, "tool_calls", None) or []
        if not tool_calls:
            raise OracleFailure(f"{stage}: model returned no {name} tool call")
        raw_args = getattr(getattr(tool_calls[0], "function", None), "arguments", None)
        try:
            payload = json.loads(raw_args or "{}")
        except json.JSONDecodeError as e:
            raise OracleFailure(f"{stage}: malformed {name} arguments") from e
        if not isinstance(payload, dict):
            raise OracleFailure(f"{stage}: {name} arguments are not an object")
        self._log.tool_payload(stage, name, payload)
        return payload

    def _finish(self, intent: Intent) -> Intent:
        self._log.result(intent.original_message, intent.action.value, intent.confidence, intent.missing_fields)
        return intent

    async def interpret(self, message: str, snapshot: DialogueSnapshot) -> Intent:
        system = build_oracle_prompt(
            snapshot=snapshot.model_dump(mode="json"),
            business_text=business_context_text(),
            today=self._today(),
        )
        payload = await self._call_tool("single", system, message, report_intent_tool())
        intent = build_intent(payload.get("action"), payload.get("confidence"), payload, message, tz=self.tz)
        return self._finish(intent)


class StagedOpenAIIntentOracle(OpenAIIntentOracle):
    strategy = "staged"

    async def interpret(self, message: str, snapshot: DialogueSnapshot) -> Intent:
        snap = snapshot.model_dump(mode="json")
        head = await self._call_tool("classify", build_classifier_prompt(snapshot=snap), message, classify_intent_tool())
        action = _coerce_action(head.get("action"))

        entities: Dict[str, Any] = {}
        if action.value in ACTION_ENTITY_FIELDS:
            system = build_entity_prompt(
                action=action.value,
                snapshot=snap,
                business_text=business_context_text(),
                today=self._today(),
            )
            entities = await self._call_tool("extract", system, message, report_entities_tool(action.value))
        intent = build_intent(action, head.get("confidence"), entities, message, tz=self.tz)
        return self._finish(intent)


def build_oracle(settings, client: Optional[AsyncOpenAI] = None) -> IntentOracle:
    client = client or AsyncOpenAI(api_key=settings.openai_api_key)
    cls = StagedOpenAIIntentOracle if settings.oracle_strategy == "staged" else OpenAIIntentOracle
    logger.info("Intent oracle: %s (model=%s)", cls.strategy, settings.openai_model)
    return cls(
        client,
        model=settings.openai_model,
        timezone=settings.timezone,
        timeout=settings.oracle_timeout_seconds,
    )


__all__ = [
    "IntentOracle",
    "OracleFailure",
    "OpenAIIntentOracle",
    "StagedOpenAIIntentOracle",
    "build_intent",
    "build_oracle",
    "parse_number",
]
