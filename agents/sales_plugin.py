"""
Sales plugin: business rules and the confirmation protocol.

Per pending action:  NONE -> DRAFTING -> AWAITING_CONFIRMATION -> COMMITTED | CANCELLED | EXPIRED

  handle(intent, state)        CREATE_SALE / UPDATE_SALE / DELETE_SALE / LIST_SALES /
                               VIEW_CUSTOMER / UPDATE_CUSTOMER
  handle_confirm(state)        commits the pending action
  pick_candidate(state, text)  answers an open customer disambiguation with "1", "2", ...

Nothing raised while handling an intent escapes: it is logged and turned into
a generic failure reply. The state object is only changed through its
transition methods, so it stays consistent when a handler fails midway.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from agents.intents import Intent, IntentAction
from agents.state import (
    CreateSaleDraft,
    DeleteSaleDraft,
    DialogueState,
    PendingStage,
    UpdateSaleDraft,
)
from business_profile import detect_customer_type
from common.config_loader import Settings
from common.dates import trailing_days
from common.formatters import format_currency, format_date, format_document, format_quantity
from db.models import utcnow
from services.customer_service import CustomerResolver
from services.errors import (
    CustomerNotFound,
    DisambiguationRequired,
    SaleNotFound,
    ValidationFailure,
)
from services.sales_service import LedgerService, SaleFilters, reconcile_prices

logger = logging.getLogger("sales-ledger")

GENERIC_FAILURE = "Sorry, something went wrong while handling that. Please try again in a moment."
LIST_PREVIEW = 10

MISSING_GUIDANCE = {
    "product": "- What product was sold?",
    "customer": "- Who was the customer?",
    "price": "- What was the price? (the total, or the price per unit)",
    "quantity": "- How many units were sold?",
}

FIELD_LABELS = {
    "product": "Product",
    "quantity": "Quantity",
    "price_per_unit": "Unit price",
    "total_price": "Total",
    "sale_date": "Date",
    "salesperson": "Salesperson",
    "customer_name": "Customer",
    "notes": "Notes",
}

_PICK_RE = re.compile(r"^\s*(?:#|n(?:o|umber)?\.?\s*)?(\d{1,2})\s*[.)]?\s*$", re.IGNORECASE)


@dataclass
class PluginResponse:
    message: str
    success: bool = True
    data: Optional[Dict[str, Any]] = None


class SalesPlugin:
    name = "sales"

    def __init__(self, ledger: LedgerService, customers: CustomerResolver, settings: Settings):
        self.ledger = ledger
        self.customers = customers
        self.settings = settings

    # ---------- formatting helpers ----------
    def _money(self, amount: Optional[float]) -> str:
        return format_currency(amount, self.settings.currency_symbol)

    def _date(self, dt: Optional[datetime]) -> str:
        return format_date(dt, self.settings.timezone)

    def _ttl(self, minutes: int) -> timedelta:
        return timedelta(minutes=minutes)

    def _sale_line(self, s: Dict[str, Any]) -> str:
        return (
            f"#{s['sale_number']} {self._date(s['sale_date'])} - {s['customer_name']} - "
            f"{format_quantity(s['quantity'])} x {s['product']} - {self._money(s['total_price'])}"
        )

    def _field_value(self, field: str, value: Any) -> str:
        if value is None:
            return "-"
        if field in ("price_per_unit", "total_price"):
            return self._money(value)
        if field == "quantity":
            return format_quantity(value)
        if field == "sale_date":
            return self._date(value)
        return str(value)

    def _create_summary(self, d: CreateSaleDraft) -> str:
        quantity = d.quantity or 1
        unit, total = reconcile_prices(quantity, d.price_per_unit, d.total_price)
        lines = [
            "Please confirm the sale:",
            f"Product: {d.product}",
            f"Customer: {d.customer_name}",
            f"Quantity: {format_quantity(quantity)} x {self._money(unit)} = {self._money(total)}",
            f"Date: {self._date(d.sale_date or utcnow())}",
            f"Salesperson: {d.salesperson}",
        ]
        if d.notes:
            lines.append(f"Notes: {d.notes}")
        lines.append('Reply "yes" to save or "no" to cancel.')
        return "\n".join(lines)

    def _update_summary(self, d: UpdateSaleDraft) -> str:
        lines = [f"Update sale #{d.sale_number}:"]
        for field, new in d.changes().items():
            old = d.previous.get(field, "-")
            lines.append(f"{FIELD_LABELS.get(field, field)}: {old} -> {self._field_value(field, new)}")
        lines.append('Reply "yes" to apply or "no" to keep it as is.')
        return "\n".join(lines)

    def _disambiguation_prompt(self, name: str, candidates: List[str]) -> str:
        lines = [f'I already have customers with a name similar to "{name}":']
        lines += [f"{i}. {c}" for i, c in enumerate(candidates, start=1)]
        lines.append(
            f'Reply with the number of the right customer, send the correct name, '
            f'or reply "yes" again to register "{name}" as a new customer.'
        )
        return "\n".join(lines)

    @staticmethod
    def _problems(e: ValidationFailure) -> str:
        return "\n".join(f"- {p['field']}: {p['message']}" for p in e.problems)

    # ---------- entry points ----------
    async def handle(self, intent: Intent, state: DialogueState) -> PluginResponse:
        handlers = {
            IntentAction.CREATE_SALE: self._handle_create,
            IntentAction.UPDATE_SALE: self._handle_update,
            IntentAction.DELETE_SALE: self._handle_delete,
            IntentAction.LIST_SALES: self._handle_list,
            IntentAction.VIEW_CUSTOMER: self._handle_view_customer,
            IntentAction.UPDATE_CUSTOMER: self._handle_update_customer,
        }
        handler = handlers.get(intent.action)
        if handler is None:
            return PluginResponse("Sorry, I can't help with that one yet.", success=False)
        try:
            return await handler(intent, state)
        except Exception:
            logger.exception("Sales plugin failed on %s", intent.action.value)
            return PluginResponse(GENERIC_FAILURE, success=False)

    async def handle_confirm(self, state: DialogueState) -> PluginResponse:
        action = state.pending_action
        try:
            if isinstance(action, CreateSaleDraft):
                return await self._confirm_create(state, action)
            if isinstance(action, UpdateSaleDraft):
                return await self._confirm_update(state, action)
            if isinstance(action, DeleteSaleDraft):
                return await self._confirm_delete(state, action)
        except Exception:
            logger.exception("Sales plugin failed confirming %s", getattr(action, "kind", None))
            return PluginResponse(GENERIC_FAILURE, success=False)
        return PluginResponse("There's nothing waiting for confirmation.", success=False)

    def pick_candidate(self, state: DialogueState, text: str) -> Optional[PluginResponse]:
        action = state.pending_action
        if not isinstance(action, (CreateSaleDraft, UpdateSaleDraft)) or not action.customer_candidates:
            return None
        m = _PICK_RE.match(text or "")
        if not m:
            return None
        candidates = action.customer_candidates
        idx = int(m.group(1))
        if not 1 <= idx <= len(candidates):
            return PluginResponse(f"Please reply with a number between 1 and {len(candidates)}.", success=False)

        chosen = candidates[idx - 1]
        updated = action.model_copy(update={
            "customer_name": chosen,
            "customer_type": None,
            "customer_candidates": [],
            "allow_similar_customer": False,
        })
        if isinstance(updated, CreateSaleDraft):
            state.await_confirmation(updated, self._ttl(self.settings.confirm_ttl_minutes))
            return PluginResponse(self._create_summary(updated))
        state.await_confirmation(updated, self._ttl(self.settings.update_ttl_minutes))
        return PluginResponse(self._update_summary(updated))

    # ---------- CREATE_SALE ----------
    async def _handle_create(self, intent: Intent, state: DialogueState) -> PluginResponse:
        current = state.pending_action if isinstance(state.pending_action, CreateSaleDraft) else CreateSaleDraft()
        draft = current.merged_with(intent.entities.present())
        draft.flagged_missing = list(intent.missing_fields)
        if not draft.salesperson:
            draft.salesperson = state.display_name or self.settings.default_salesperson

        missing = draft.missing_fields()
        if missing:
            state.stage_draft(draft, self._ttl(self.settings.draft_ttl_minutes))
            lines = ["Almost there! I still need:"]
            lines += [MISSING_GUIDANCE[m] for m in missing if m in MISSING_GUIDANCE]
            return PluginResponse("\n".join(lines), success=True, data={"missing": missing})

        state.await_confirmation(draft, self._ttl(self.settings.confirm_ttl_minutes))
        return PluginResponse(self._create_summary(draft))

    async def _confirm_create(self, state: DialogueState, d: CreateSaleDraft) -> PluginResponse:
        data = {
            "product": d.product,
            "quantity": d.quantity or 1,
            "price_per_unit": d.price_per_unit,
            "total_price": d.total_price,
            "sale_date": d.sale_date or utcnow(),
            "salesperson": d.salesperson or state.display_name or self.settings.default_salesperson,
            "customer_name": d.customer_name,
            "customer_type": d.customer_type or detect_customer_type(d.customer_name),
            "notes": d.notes,
            # candidates were already shown: confirming again means "new customer"
            "allow_similar_customer": d.allow_similar_customer or bool(d.customer_candidates),
            "draft_id": d.draft_id,
        }
        try:
            sale = await self.ledger.create_sale(state.partition_key, data)
        except DisambiguationRequired as e:
            names = [c["name"] for c in e.candidates]
            state.await_confirmation(
                d.model_copy(update={"customer_candidates": names}),
                self._ttl(self.settings.confirm_ttl_minutes),
            )
            return PluginResponse(self._disambiguation_prompt(d.customer_name or "", names),
                                  success=False, data={"candidates": names})
        except ValidationFailure as e:
            state.stage_draft(d, self._ttl(self.settings.draft_ttl_minutes))
            return PluginResponse("I couldn't save that sale. Please correct:\n" + self._problems(e),
                                  success=False, data={"problems": e.problems})

        state.clear_pending(PendingStage.COMMITTED)
        state.remember(sale_number=sale["sale_number"], customer_name=sale["customer_name"])
        return PluginResponse(
            f"Sale #{sale['sale_number']} saved: {format_quantity(sale['quantity'])} x {sale['product']} "
            f"to {sale['customer_name']} for {self._money(sale['total_price'])}.",
            data={"sale": sale},
        )

    # ---------- UPDATE_SALE ----------
    async def _target_sale(self, intent: Intent, state: DialogueState):
        number = intent.entities.sale_number or state.last_sale_number
        if not number:
            return None, PluginResponse("Which sale? Please tell me the sale number (e.g. #12).", success=False)
        sale = await self.ledger.get_by_number(state.partition_key, number)
        if not sale:
            return None, PluginResponse(f"I couldn't find sale #{number}.", success=False)
        return sale, None

    async def _handle_update(self, intent: Intent, state: DialogueState) -> PluginResponse:
        sale, problem = await self._target_sale(intent, state)
        if problem:
            return problem
        number = sale["sale_number"]
        state.remember(sale_number=number)

        entities = intent.entities.present()
        changes = {k: entities[k] for k in UpdateSaleDraft.CHANGEABLE if k in entities}
        # unchanged values are not changes
        changes = {k: v for k, v in changes.items() if sale.get(k) != v}
        if not changes:
            return PluginResponse(
                f"What would you like to change in sale #{number}? "
                "(customer, product, quantity, price, date or notes)",
                success=False,
            )

        previous = {k: self._field_value(k, sale.get(k)) for k in changes}
        draft = UpdateSaleDraft(sale_number=number, previous=previous, **changes)
        if draft.customer_name:
            draft.customer_type = entities.get("customer_type") or detect_customer_type(draft.customer_name)
        state.await_confirmation(draft, self._ttl(self.settings.update_ttl_minutes))
        return PluginResponse(self._update_summary(draft))

    async def _confirm_update(self, state: DialogueState, d: UpdateSaleDraft) -> PluginResponse:
        changes: Dict[str, Any] = d.changes()
        if d.customer_name:
            changes["customer_type"] = d.customer_type or detect_customer_type(d.customer_name)
            changes["allow_similar_customer"] = d.allow_similar_customer or bool(d.customer_candidates)
        try:
            sale = await self.ledger.update_sale(state.partition_key, d.sale_number, changes)
        except SaleNotFound:
            state.clear_pending(PendingStage.CANCELLED)
            return PluginResponse(f"Sale #{d.sale_number} no longer exists.", success=False)
        except DisambiguationRequired as e:
            names = [c["name"] for c in e.candidates]
            state.await_confirmation(
                d.model_copy(update={"customer_candidates": names}),
                self._ttl(self.settings.update_ttl_minutes),
            )
            return PluginResponse(self._disambiguation_prompt(d.customer_name or "", names),
                                  success=False, data={"candidates": names})
        except ValidationFailure as e:
            state.clear_pending(PendingStage.CANCELLED)
            return PluginResponse(f"I couldn't update sale #{d.sale_number}:\n" + self._problems(e),
                                  success=False, data={"problems": e.problems})

        state.clear_pending(PendingStage.COMMITTED)
        state.remember(sale_number=sale["sale_number"], customer_name=sale["customer_name"])
        return PluginResponse(f"Sale #{sale['sale_number']} updated: {self._sale_line(sale)}", data={"sale": sale})

    # ---------- DELETE_SALE ----------
    async def _handle_delete(self, intent: Intent, state: DialogueState) -> PluginResponse:
        sale, problem = await self._target_sale(intent, state)
        if problem:
            return problem
        draft = DeleteSaleDraft(sale_number=sale["sale_number"], summary=self._sale_line(sale))
        state.remember(sale_number=sale["sale_number"])
        state.await_confirmation(draft, self._ttl(self.settings.delete_ttl_minutes))
        return PluginResponse(
            f"Delete this sale?\n{draft.summary}\nReply \"yes\" to delete or \"no\" to keep it."
        )

    async def _confirm_delete(self, state: DialogueState, d: DeleteSaleDraft) -> PluginResponse:
        try:
            removed = await self.ledger.delete_sale(state.partition_key, d.sale_number)
        except SaleNotFound:
            state.clear_pending(PendingStage.CANCELLED)
            return PluginResponse(f"Sale #{d.sale_number} was already removed.", success=False)
        state.clear_pending(PendingStage.COMMITTED)
        if state.last_sale_number == d.sale_number:
            state.last_sale_number = None
        return PluginResponse(f"Sale #{d.sale_number} deleted.", data={"sale": removed})

    # ---------- LIST_SALES ----------
    async def _handle_list(self, intent: Intent, state: DialogueState) -> PluginResponse:
        e = intent.entities
        default_start, default_end = trailing_days(self.settings.list_default_days, tz=self.settings.timezone)
        start = e.start_date or default_start
        end = e.end_date or default_end
        filters = SaleFilters(start=start, end=end, customer_name=e.customer_name, salesperson=e.salesperson)
        sales = await self.ledger.list_sales(state.partition_key, filters)

        scope = f"from {self._date(start)} to {self._date(end)}"
        if e.customer_name:
            scope += f" for {e.customer_name}"
        if e.salesperson:
            scope += f" by {e.salesperson}"
        if not sales:
            return PluginResponse(f"No sales found {scope}.", data={"sales": []})

        total = sum(s["total_price"] for s in sales)
        lines = [f"Sales {scope} ({len(sales)}):"]
        lines += [self._sale_line(s) for s in sales[:LIST_PREVIEW]]
        if len(sales) > LIST_PREVIEW:
            lines.append(f"...and {len(sales) - LIST_PREVIEW} more")
        lines.append(f"Total: {self._money(total)}")
        if e.salesperson:
            stats = await self.ledger.stats_for(state.partition_key, e.salesperson, start, end)
            lines.append(
                f"{e.salesperson}: {stats['count']} sales, {self._money(stats['total'])} total, "
                f"{self._money(stats['average'])} average"
            )
        return PluginResponse("\n".join(lines), data={"sales": sales})

    # ---------- VIEW_CUSTOMER ----------
    async def _handle_view_customer(self, intent: Intent, state: DialogueState) -> PluginResponse:
        name = intent.entities.customer_name or state.last_customer_name
        if not name:
            return PluginResponse("Which customer would you like to see?", success=False)
        stats = await self.ledger.customer_stats(state.partition_key, name)
        if not stats:
            found = await self.customers.resolve(state.partition_key, name)
            if found["similar"]:
                options = ", ".join(c["name"] for c in found["similar"])
                return PluginResponse(
                    f'I couldn\'t find a customer named "{name}". Did you mean: {options}?',
                    success=False,
                    data={"customer": None, "similar": [c["name"] for c in found["similar"]]},
                )
            return PluginResponse(f'I couldn\'t find a customer named "{name}".', data={"customer": None})

        c = stats["customer"]
        state.remember(customer_name=c["name"])
        lines = [f"Customer: {c['name']} ({c['type'].lower()})"]
        if c.get("document"):
            lines.append(f"Document: {format_document(c['document'])}")
        if c.get("address"):
            lines.append(f"Address: {c['address']}")
        lines.append(f"Purchases: {stats['count']}")
        lines.append(f"Total spent: {self._money(stats['total'])}")
        lines.append(f"Average ticket: {self._money(stats['average'])}")
        last = stats["last_sale"]
        if last:
            lines.append(f"Last purchase: {self._sale_line(last)}")
        return PluginResponse("\n".join(lines), data=stats)

    # ---------- UPDATE_CUSTOMER ----------
    async def _handle_update_customer(self, intent: Intent, state: DialogueState) -> PluginResponse:
        e = intent.entities
        name = e.customer_name or state.last_customer_name
        if not name:
            return PluginResponse("Which customer should I update?", success=False)
        fields = {
            "type": e.customer_type,
            "document": e.customer_document,
            "address": e.customer_address,
            "notes": e.customer_notes,
        }
        fields = {k: v for k, v in fields.items() if v}
        if not fields:
            return PluginResponse(
                f"What should I update for {name}? (document, address, notes or type)", success=False
            )

        found = await self.customers.resolve(state.partition_key, name)
        if not found["exact"]:
            if found["similar"]:
                options = ", ".join(c["name"] for c in found["similar"])
                return PluginResponse(f'Did you mean: {options}? Please use the exact customer name.', success=False)
            return PluginResponse(f'I couldn\'t find a customer named "{name}".', success=False)

        try:
            updated = await self.customers.update_customer(state.partition_key, found["exact"]["name"], **fields)
        except CustomerNotFound:
            return PluginResponse(f'I couldn\'t find a customer named "{name}".', success=False)
        except ValidationFailure as err:
            return PluginResponse("Please correct:\n" + self._problems(err), success=False)

        state.remember(customer_name=updated["name"])
        return PluginResponse(f"Customer {updated['name']} updated: {', '.join(sorted(fields))}.", data={"customer": updated})
