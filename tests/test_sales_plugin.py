# tests/test_sales_plugin.py
from datetime import datetime, timedelta, timezone

import pytest

from agents.intents import Intent, IntentAction, IntentEntities
from agents.sales_plugin import GENERIC_FAILURE, SalesPlugin
from agents.state import CreateSaleDraft, DeleteSaleDraft, DialogueState, PendingStage, UpdateSaleDraft

pytestmark = pytest.mark.asyncio

P = "5511999990001"


def intent(action: IntentAction, missing=None, **entities) -> Intent:
    return Intent(action=action, confidence=0.9, entities=IntentEntities(**entities), missing_fields=missing or [])


@pytest.fixture
def plugin(ledger, customers, settings) -> SalesPlugin:
    return SalesPlugin(ledger, customers, settings)


@pytest.fixture
def state() -> DialogueState:
    return DialogueState(partition_key=P, display_name="Gabriel")


async def _record_sale(plugin, state, **entities):
    await plugin.handle(intent(IntentAction.CREATE_SALE, **entities), state)
    return await plugin.handle_confirm(state)


# ----------------------------- CREATE_SALE -----------------------------
async def test_complete_sale_awaits_confirmation_then_commits(plugin, state, ledger):
    resp = await plugin.handle(
        intent(IntentAction.CREATE_SALE, product="Seasoned Salt", quantity=3, total_price=40.0,
               customer_name="Fernando Market"),
        state,
    )
    assert state.stage == PendingStage.AWAITING_CONFIRMATION
    assert "Fernando Market" in resp.message
    assert "3 x $13.33 = $40.00" in resp.message
    assert "Gabriel" in resp.message
    assert state.pending_expires_at - datetime.now(timezone.utc) <= timedelta(minutes=15)

    done = await plugin.handle_confirm(state)
    assert done.success
    assert "Sale #1 saved" in done.message
    assert state.stage == PendingStage.NONE
    assert state.last_sale_number == 1
    assert state.last_customer_name == "Fernando Market"

    sale = await ledger.get_by_number(P, 1)
    assert sale["total_price"] == 40.0
    assert sale["customer_type"] == "BUSINESS"
    assert sale["salesperson"] == "Gabriel"


async def test_missing_fields_are_asked_one_per_line(plugin, state):
    resp = await plugin.handle(intent(IntentAction.CREATE_SALE, product="Seasoned Salt"), state)
    assert state.stage == PendingStage.DRAFTING
    assert resp.data["missing"] == ["customer", "price"]
    assert "Who was the customer?" in resp.message
    assert "What was the price?" in resp.message

    resp = await plugin.handle(intent(IntentAction.CREATE_SALE, customer_name="Ana Souza", total_price=25.0), state)
    assert state.stage == PendingStage.AWAITING_CONFIRMATION
    assert isinstance(state.pending_action, CreateSaleDraft)
    assert state.pending_action.product == "Seasoned Salt"


async def test_oracle_flagged_quantity_is_asked(plugin, state):
    resp = await plugin.handle(
        intent(IntentAction.CREATE_SALE, missing=["quantity"], product="Seasoned Salt",
               customer_name="Ana Souza", price_per_unit=10.0),
        state,
    )
    assert resp.data["missing"] == ["quantity"]
    assert "How many units" in resp.message


async def test_similar_customer_disambiguation_pick_by_number(plugin, state, ledger):
    await _record_sale(plugin, state, product="Seasoned Salt", total_price=10.0, customer_name="Fernanda Lima")

    await plugin.handle(intent(IntentAction.CREATE_SALE, product="Seasoned Salt", total_price=20.0,
                               customer_name="Fernando Lima"), state)
    resp = await plugin.handle_confirm(state)
    assert not resp.success
    assert "1. Fernanda Lima" in resp.message
    assert state.stage == PendingStage.AWAITING_CONFIRMATION
    assert state.pending_action.customer_candidates == ["Fernanda Lima"]

    assert plugin.pick_candidate(state, "hello") is None
    assert not plugin.pick_candidate(state, "7").success
    picked = plugin.pick_candidate(state, "1")
    assert "Customer: Fernanda Lima" in picked.message
    assert state.pending_action.customer_candidates == []

    done = await plugin.handle_confirm(state)
    assert done.success
    assert (await ledger.get_by_number(P, 2))["customer_name"] == "Fernanda Lima"


async def test_confirming_again_registers_new_customer(plugin, state, customers):
    await _record_sale(plugin, state, product="Seasoned Salt", total_price=10.0, customer_name="Fernanda Lima")
    await plugin.handle(intent(IntentAction.CREATE_SALE, product="Seasoned Salt", total_price=20.0,
                               customer_name="Fernando Lima"), state)
    await plugin.handle_confirm(state)

    done = await plugin.handle_confirm(state)
    assert done.success
    assert done.data["sale"]["customer_name"] == "Fernando Lima"
    assert len(await customers.list_customers(P)) == 2


async def test_validation_failure_returns_to_drafting(plugin, state):
    future = datetime.now(timezone.utc) + timedelta(days=3)
    await plugin.handle(intent(IntentAction.CREATE_SALE, product="Seasoned Salt", total_price=20.0,
                               customer_name="Ana Souza", sale_date=future), state)
    resp = await plugin.handle_confirm(state)
    assert not resp.success
    assert "sale_date" in resp.message
    assert state.stage == PendingStage.DRAFTING


async def test_unexpected_errors_become_generic_failure(plugin, state, monkeypatch):
    async def boom(*args, **kwargs):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(plugin.ledger, "list_sales", boom)
    resp = await plugin.handle(intent(IntentAction.LIST_SALES), state)
    assert resp.message == GENERIC_FAILURE
    assert not resp.success


# ----------------------------- UPDATE / DELETE -----------------------------
async def test_update_uses_last_sale_and_shows_old_and_new(plugin, state, ledger):
    await _record_sale(plugin, state, product="Seasoned Salt", quantity=2, price_per_unit=20.0,
                       customer_name="Ana Souza")

    resp = await plugin.handle(intent(IntentAction.UPDATE_SALE, quantity=5), state)
    assert isinstance(state.pending_action, UpdateSaleDraft)
    assert "Quantity: 2 -> 5" in resp.message

    done = await plugin.handle_confirm(state)
    assert done.success
    sale = await ledger.get_by_number(P, 1)
    assert sale["quantity"] == 5
    assert sale["total_price"] == 100.0


async def test_update_without_changes_or_target(plugin, state):
    resp = await plugin.handle(intent(IntentAction.UPDATE_SALE, quantity=5), state)
    assert "Which sale" in resp.message

    resp = await plugin.handle(intent(IntentAction.UPDATE_SALE, sale_number=42, quantity=5), state)
    assert "couldn't find sale #42" in resp.message
    assert state.stage == PendingStage.NONE

    await _record_sale(plugin, state, product="Seasoned Salt", total_price=10.0, customer_name="Ana Souza")
    resp = await plugin.handle(intent(IntentAction.UPDATE_SALE, sale_number=1), state)
    assert "What would you like to change" in resp.message
    assert state.stage == PendingStage.NONE


async def test_delete_requires_confirmation(plugin, state, ledger):
    await _record_sale(plugin, state, product="Seasoned Salt", total_price=10.0, customer_name="Ana Souza")
    resp = await plugin.handle(intent(IntentAction.DELETE_SALE, sale_number=1), state)
    assert isinstance(state.pending_action, DeleteSaleDraft)
    assert "#1" in resp.message
    remaining = state.pending_expires_at - datetime.now(timezone.utc)
    assert timedelta(minutes=4) < remaining <= timedelta(minutes=5)

    done = await plugin.handle_confirm(state)
    assert "deleted" in done.message
    assert await ledger.get_by_number(P, 1) is None
    assert state.last_sale_number is None


# ----------------------------- queries -----------------------------
async def test_list_sales_with_salesperson_stats(plugin, state):
    for total in (10.0, 30.0):
        await _record_sale(plugin, state, product="Seasoned Salt", total_price=total, customer_name="Ana Souza")

    resp = await plugin.handle(intent(IntentAction.LIST_SALES, salesperson="Gabriel"), state)
    assert "(2)" in resp.message
    assert "Total: $40.00" in resp.message
    assert "Gabriel: 2 sales, $40.00 total, $20.00 average" in resp.message

    resp = await plugin.handle(intent(IntentAction.LIST_SALES, customer_name="Nobody"), state)
    assert resp.success
    assert resp.message.startswith("No sales found")


async def test_list_sales_preview_is_capped(plugin, state):
    for _ in range(12):
        await _record_sale(plugin, state, product="Seasoned Salt", total_price=1.0, customer_name="Ana Souza")
    resp = await plugin.handle(intent(IntentAction.LIST_SALES), state)
    assert "...and 2 more" in resp.message
    assert "#12 " in resp.message
    assert "#2 " not in resp.message


async def test_view_customer(plugin, state):
    await _record_sale(plugin, state, product="Seasoned Salt", total_price=10.0, customer_name="Padaria Central")
    await _record_sale(plugin, state, product="Seasoned Salt", total_price=30.0, customer_name="Padaria Central")

    resp = await plugin.handle(intent(IntentAction.VIEW_CUSTOMER, customer_name="padaria central"), state)
    assert "Purchases: 2" in resp.message
    assert "Total spent: $40.00" in resp.message
    assert "Average ticket: $20.00" in resp.message

    resp = await plugin.handle(intent(IntentAction.VIEW_CUSTOMER, customer_name="Zed Zulu"), state)
    assert "couldn't find" in resp.message


async def test_view_customer_suggests_similar_names_instead_of_showing_them(plugin, state):
    await _record_sale(plugin, state, product="Seasoned Salt", total_price=10.0, customer_name="Fernanda Lima")
    state.last_customer_name = None

    resp = await plugin.handle(intent(IntentAction.VIEW_CUSTOMER, customer_name="Fernando Lima"), state)
    assert not resp.success
    assert 'couldn\'t find a customer named "Fernando Lima"' in resp.message
    assert "Did you mean: Fernanda Lima?" in resp.message
    assert "Purchases:" not in resp.message
    assert resp.data["similar"] == ["Fernanda Lima"]
    assert state.last_customer_name is None


async def test_replayed_confirmation_records_the_sale_once(plugin, state, ledger):
    await plugin.handle(
        intent(IntentAction.CREATE_SALE, product="Seasoned Salt", quantity=3, total_price=40.0,
               customer_name="Fernando Market"),
        state,
    )
    stale_copy = state.model_copy(deep=True)

    first = await plugin.handle_confirm(state)
    replay = await plugin.handle_confirm(stale_copy)
    assert "Sale #1 saved" in first.message
    assert "Sale #1 saved" in replay.message
    assert len(await ledger.list_sales(P)) == 1


async def test_update_customer(plugin, state, customers):
    await customers.create_customer(P, "Ana Souza")
    resp = await plugin.handle(
        intent(IntentAction.UPDATE_CUSTOMER, customer_name="ana souza", customer_address="Rua 1, 100"), state
    )
    assert resp.success
    assert (await customers.get_customer(P, "Ana Souza"))["address"] == "Rua 1, 100"

    resp = await plugin.handle(intent(IntentAction.UPDATE_CUSTOMER, customer_name="Ana Sousa", customer_notes="vip"), state)
    assert "Did you mean: Ana Souza" in resp.message

    resp = await plugin.handle(intent(IntentAction.UPDATE_CUSTOMER, customer_name="Ana Souza"), state)
    assert "What should I update" in resp.message
