# constants/prompts/oracle_prompts.py
from __future__ import annotations
import json
from typing import Any, Dict, List, Optional

__all__ = [
    "INTENT_DESCRIPTIONS",
    "ENTITY_FIELDS",
    "ACTION_ENTITY_FIELDS",
    "report_intent_tool",
    "classify_intent_tool",
    "report_entities_tool",
    "build_oracle_prompt",
    "build_classifier_prompt",
    "build_entity_prompt",
]

INTENT_DESCRIPTIONS: Dict[str, str] = {
    "CREATE_SALE": "The user reports a sale (or adds details such as price, quantity or customer to a sale being drafted).",
    "CONFIRM_ACTION": "The user agrees with the pending summary: yes, ok, confirm, correct, go ahead.",
    "CANCEL_ACTION": "The user rejects or abandons the pending action: no, cancel, forget it, stop.",
    "UPDATE_SALE": "The user wants to change an existing sale (customer, price, quantity, product, date, notes).",
    "LIST_SALES": "The user asks to see sales or totals, optionally for a period, customer or salesperson.",
    "DELETE_SALE": "The user wants to remove an existing sale.",
    "VIEW_CUSTOMER": "The user asks about a customer: history, totals, last purchase.",
    "UPDATE_CUSTOMER": "The user gives new details for an existing customer (document, address, notes, type).",
    "UNKNOWN": "Anything else, greetings, or when you cannot tell.",
}

# name -> (json type, description)
ENTITY_FIELDS: Dict[str, Any] = {
    "product": ("string", "Product sold, catalog name."),
    "quantity": ("number", "Units sold (kits count as units). Omit if not said."),
    "price_per_unit": ("number", "Price of one unit, only if the user said it is per unit."),
    "total_price": ("number", "Total amount of the sale. A bare amount is a total."),
    "sale_date": ("string", "Date phrase exactly as said: 'yesterday', 'friday', '2025-10-01'. Omit if not said."),
    "salesperson": ("string", "Salesperson name if someone other than the sender made the sale."),
    "notes": ("string", "Free notes about the sale."),
    "customer_name": ("string", "Customer name as written by the user."),
    "customer_type": ("string", "PERSON or BUSINESS if the user said it."),
    "customer_document": ("string", "Customer tax/id document."),
    "customer_address": ("string", "Customer address."),
    "customer_notes": ("string", "Notes about the customer."),
    "sale_number": ("integer", "Sale number referenced, e.g. 12 for 'sale #12'."),
    "period": ("string", "Period phrase for listings: 'today', 'this week', 'last month', 'last 7 days'."),
}

ACTION_ENTITY_FIELDS: Dict[str, List[str]] = {
    "CREATE_SALE": ["product", "quantity", "price_per_unit", "total_price", "sale_date",
                    "salesperson", "notes", "customer_name", "customer_type"],
    "UPDATE_SALE": ["sale_number", "product", "quantity", "price_per_unit", "total_price",
                    "sale_date", "salesperson", "notes", "customer_name"],
    "DELETE_SALE": ["sale_number"],
    "LIST_SALES": ["period", "customer_name", "salesperson"],
    "VIEW_CUSTOMER": ["customer_name"],
    "UPDATE_CUSTOMER": ["customer_name", "customer_type", "customer_document",
                        "customer_address", "customer_notes"],
}


# ---------- helpers ----------

def _properties(names: List[str]) -> Dict[str, Any]:
    return {n: {"type": ENTITY_FIELDS[n][0], "description": ENTITY_FIELDS[n][1]} for n in names}


def _snapshot_lines(snapshot: Optional[Dict[str, Any]]) -> List[str]:
    snapshot = snapshot or {}
    lines = []
    if snapshot.get("display_name"):
        lines.append(f"- Sender (salesperson): {snapshot['display_name']}")
    if snapshot.get("pending_kind"):
        stage = snapshot.get("stage", "")
        lines.append(f"- Pending {snapshot['pending_kind']} ({stage}): {json.dumps(snapshot.get('pending') or {}, ensure_ascii=False)}")
        if stage == "AWAITING_CONFIRMATION":
            lines.append("  The user was just asked to confirm it: yes/ok -> CONFIRM_ACTION, no/cancel -> CANCEL_ACTION.")
        else:
            lines.append("  The draft is incomplete: a message that only adds a missing detail (e.g. just a price) is CREATE_SALE with that detail.")
    if snapshot.get("last_sale_number"):
        lines.append(f"- Last sale referenced: #{snapshot['last_sale_number']} ('that sale', 'it')")
    if snapshot.get("last_customer_name"):
        lines.append(f"- Last customer referenced: {snapshot['last_customer_name']}")
    return lines or ["- (no prior context)"]


# ---------- TOOLS ----------

def report_intent_tool() -> Dict[str, Any]:
    props = {
        "action": {"type": "string", "enum": list(INTENT_DESCRIPTIONS)},
        "confidence": {"type": "number", "description": "0..1, not a percent"},
        "missing_fields": {"type": "array", "items": {"type": "string"},
                           "description": "Required sale fields the user did not give: product, customer, price."},
    }
    props.update(_properties(list(ENTITY_FIELDS)))
    return {
        "type": "function",
        "function": {
            "name": "report_intent",
            "description": "Report the structured intent of the user's message.",
            "parameters": {"type": "object", "properties": props, "required": ["action", "confidence"]},
        },
    }


def classify_intent_tool() -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": "classify_intent",
            "description": "Classify the user's message into exactly one action.",
            "parameters": {
                "type": "object",
                "properties": {
                    "action": {"type": "string", "enum": list(INTENT_DESCRIPTIONS)},
                    "confidence": {"type": "number"},
                },
                "required": ["action", "confidence"],
            },
        },
    }


def report_entities_tool(action: str) -> Dict[str, Any]:
    names = ACTION_ENTITY_FIELDS.get(action, [])
    props = _properties(names)
    props["missing_fields"] = {"type": "array", "items": {"type": "string"}}
    return {
        "type": "function",
        "function": {
            "name": "report_entities",
            "description": f"Extract the details of a {action} request.",
            "parameters": {"type": "object", "properties": props},
        },
    }


# ---------- PROMPTS ----------

def build_oracle_prompt(*, snapshot: Optional[Dict[str, Any]], business_text: str, today: str) -> str:
    lines = []
    lines.append("You interpret WhatsApp-style messages from salespeople of a small business that record and query sales.")
    lines.append("Pick exactly ONE action from the Actions Block and extract only what the user actually said.")
    lines.append("Never invent values. Omit fields that were not mentioned.")
    lines.append("")
    lines.append(f"Today is {today}.")
    lines.append("")
    lines.append(business_text)
    lines.append("")
    lines.append("Actions Block:")
    for code, desc in INTENT_DESCRIPTIONS.items():
        lines.append(f"- {code}: {desc}")
    lines.append("")
    lines.append("Conversation context:")
    lines.extend(_snapshot_lines(snapshot))
    lines.append("")
    lines.append("Rules:")
    lines.append("- A bare amount ('40', '$40') is total_price. 'at 10 each' / '10 per kit' is price_per_unit.")
    lines.append("- For CREATE_SALE list in missing_fields any of product, customer, price that is still unknown after the pending draft.")
    lines.append("- Dates: copy the user's phrase into sale_date or period; do not convert it.")
    lines.append("- 'that sale' / 'the last one' refers to the last sale referenced.")
    lines.append("")
    lines.append("Examples:")
    lines.append('- "Sold 3 kits to Fernando market, 40" -> CREATE_SALE product=Seasoned Salt quantity=3 customer_name="Fernando market" total_price=40')
    lines.append('- "yes" while a sale awaits confirmation -> CONFIRM_ACTION')
    lines.append('- "change the customer of sale 12 to Ana" -> UPDATE_SALE sale_number=12 customer_name="Ana"')
    lines.append('- "what did Miriam sell this week" -> LIST_SALES salesperson="Miriam" period="this week"')
    lines.append("")
    lines.append("Now call report_intent exactly once, with NO extra text.")
    return "\n".join(lines)


def build_classifier_prompt(*, snapshot: Optional[Dict[str, Any]]) -> str:
    lines = ["Classify the salesperson's message. Use ONLY these codes:"]
    for code, desc in INTENT_DESCRIPTIONS.items():
        lines.append(f"- {code}: {desc}")
    lines.append("")
    lines.append("Conversation context:")
    lines.extend(_snapshot_lines(snapshot))
    lines.append("")
    lines.append("Call classify_intent exactly once.")
    return "\n".join(lines)


def build_entity_prompt(*, action: str, snapshot: Optional[Dict[str, Any]], business_text: str, today: str) -> str:
    lines = [f"The salesperson's message is a {action} request. Extract its details."]
    lines.append("Never invent values; omit anything not said. Copy date phrases verbatim.")
    lines.append(f"Today is {today}.")
    lines.append("")
    lines.append(business_text)
    lines.append("")
    lines.append("Conversation context:")
    lines.extend(_snapshot_lines(snapshot))
    lines.append("")
    lines.append("Call report_entities exactly once.")
    return "\n".join(lines)
