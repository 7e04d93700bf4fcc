# tests/test_controller.py
import dataclasses
from datetime import timedelta

import pytest

from agents.controller import APOLOGY, HELP_TEXT, NOTHING_TO_CANCEL, NOTHING_TO_CONFIRM, DialogueController
from agents.intents import IntentAction
from agents.state import PendingStage
from db.models import utcnow
from services.errors import TransientStoreError

pytestmark = pytest.mark.asyncio

PARTITION = "5511999990001"


@pytest.fixture
def controller(database, settings, oracle) -> DialogueController:
    oracle.on("yes", IntentAction.CONFIRM_ACTION)
    oracle.on("no", IntentAction.CANCEL_ACTION)
    oracle.on(
        "Sold 3 kits to Fernando market for 40",
        IntentAction.CREATE_SALE,
        product="Seasoned Salt", quantity=3, total_price=40.0, customer_name="Fernando market",
    )
    oracle.on(
        "Sold 2 kits to Ana Souza",
        IntentAction.CREATE_SALE,
        product="Seasoned Salt", quantity=2, customer_name="Ana Souza", missing_fields=["price"],
    )
    return DialogueController.from_settings(database, settings, oracle=oracle)


async def test_report_and_confirm_a_sale(controller):
    reply = await controller.handle_inbound_message(PARTITION, "Sold 3 kits to Fernando market for 40")
    assert "Please confirm the sale" in reply

    reply = await controller.handle_inbound_message(PARTITION, "yes")
    assert "Sale #1 saved" in reply

    sale = await controller.plugin.ledger.get_by_number(PARTITION, 1)
    assert sale["total_price"] == 40.0
    assert sale["quantity"] == 3
    assert sale["customer_type"] == "BUSINESS"
    assert sale["salesperson"] == "Gabriel"

    state = await controller.store.get(PARTITION)
    assert state.stage == PendingStage.NONE
    assert state.last_sale_number == 1


async def test_bare_amount_fills_missing_price(controller, oracle):
    reply = await controller.handle_inbound_message(PARTITION, "Sold 2 kits to Ana Souza")
    assert "What was the price?" in reply

    calls_before = len(oracle.calls)
    reply = await controller.handle_inbound_message(PARTITION, "40")
    assert len(oracle.calls) == calls_before
    assert "2 x $20.00 = $40.00" in reply

    reply = await controller.handle_inbound_message(PARTITION, "yes")
    assert "Sale #1 saved" in reply
    assert (await controller.plugin.ledger.get_by_number(PARTITION, 1))["total_price"] == 40.0


async def test_expired_confirmation_is_not_applied(controller):
    await controller.handle_inbound_message(PARTITION, "Sold 3 kits to Fernando market for 40")

    state = await controller.store.get(PARTITION)
    state.pending_expires_at = utcnow() - timedelta(minutes=1)
    await controller.store.upsert(state)

    reply = await controller.handle_inbound_message(PARTITION, "yes")
    assert NOTHING_TO_CONFIRM in reply
    assert await controller.plugin.ledger.get_by_number(PARTITION, 1) is None
    assert (await controller.store.get(PARTITION)).pending_action is None


async def test_cancel_discards_pending_action(controller):
    await controller.handle_inbound_message(PARTITION, "Sold 3 kits to Fernando market for 40")
    reply = await controller.handle_inbound_message(PARTITION, "no")
    assert "cancelled" in reply.lower()
    assert await controller.handle_inbound_message(PARTITION, "no") == NOTHING_TO_CANCEL
    assert await controller.handle_inbound_message(PARTITION, "yes") == NOTHING_TO_CONFIRM


async def test_unknown_message_gets_help(controller):
    assert await controller.handle_inbound_message(PARTITION, "good morning!") == HELP_TEXT


async def test_oracle_failure_degrades_to_help(database, settings, exploding_oracle):
    controller = DialogueController.from_settings(database, settings, oracle=exploding_oracle)
    assert await controller.handle_inbound_message(PARTITION, "Sold 3 kits") == HELP_TEXT


async def test_candidate_pick_by_number(controller, oracle):
    oracle.on("Sold 1 kit to Fernanda Lima for 10", IntentAction.CREATE_SALE,
              product="Seasoned Salt", quantity=1, total_price=10.0, customer_name="Fernanda Lima")
    oracle.on("Sold 1 kit to Fernando Lima for 10", IntentAction.CREATE_SALE,
              product="Seasoned Salt", quantity=1, total_price=10.0, customer_name="Fernando Lima")

    await controller.handle_inbound_message(PARTITION, "Sold 1 kit to Fernanda Lima for 10")
    await controller.handle_inbound_message(PARTITION, "yes")
    await controller.handle_inbound_message(PARTITION, "Sold 1 kit to Fernando Lima for 10")
    reply = await controller.handle_inbound_message(PARTITION, "yes")
    assert "1. Fernanda Lima" in reply

    reply = await controller.handle_inbound_message(PARTITION, "1")
    assert "Customer: Fernanda Lima" in reply
    reply = await controller.handle_inbound_message(PARTITION, "yes")
    assert "Sale #2 saved" in reply
    assert (await controller.plugin.ledger.get_by_number(PARTITION, 2))["customer_name"] == "Fernanda Lima"


async def test_partitions_are_independent(controller, oracle):
    await controller.handle_inbound_message(PARTITION, "Sold 3 kits to Fernando market for 40")
    assert await controller.handle_inbound_message("other-sender", "yes") == NOTHING_TO_CONFIRM

    other = await controller.store.get("other-sender")
    assert other.display_name == "Unknown"
    assert (await controller.store.get(PARTITION)).stage == PendingStage.AWAITING_CONFIRMATION


async def test_oracle_sees_pending_context(controller, oracle):
    await controller.handle_inbound_message(PARTITION, "Sold 3 kits to Fernando market for 40")
    await controller.handle_inbound_message(PARTITION, "yes")
    _, snapshot = oracle.calls[-1]
    assert snapshot.stage == PendingStage.AWAITING_CONFIRMATION
    assert snapshot.pending_kind == "CREATE_SALE"
    assert snapshot.display_name == "Gabriel"


async def test_unexpected_errors_return_apology(controller, monkeypatch):
    async def broken(*args, **kwargs):
        raise RuntimeError("state store down")

    monkeypatch.setattr(controller.store, "get", broken)
    reply = await controller.handle_inbound_message(PARTITION, "yes")
    assert reply.startswith("Sorry")


async def test_two_controllers_commit_a_confirmation_once(database, settings, oracle, controller):
    # `controller` only scripts the oracle; each controller below has its own state cache
    cached = dataclasses.replace(settings, state_cache_size=512, state_cache_ttl_seconds=60.0)
    first = DialogueController.from_settings(database, cached, oracle=oracle)
    second = DialogueController.from_settings(database, cached, oracle=oracle)

    await first.handle_inbound_message(PARTITION, "Sold 3 kits to Fernando market for 40")
    assert await second.handle_inbound_message(PARTITION, "good morning!") == HELP_TEXT
    assert "Sale #1 saved" in await first.handle_inbound_message(PARTITION, "yes")

    assert await second.handle_inbound_message(PARTITION, "yes") == NOTHING_TO_CONFIRM
    assert [s["sale_number"] for s in await first.plugin.ledger.list_sales(PARTITION)] == [1]
    assert (await second.store.get(PARTITION)).stage == PendingStage.NONE


async def test_state_write_failure_after_commit_does_not_commit_again(controller, monkeypatch):
    await controller.handle_inbound_message(PARTITION, "Sold 3 kits to Fernando market for 40")

    real_upsert = controller.store.upsert
    failures = [RuntimeError("connection reset")]

    async def flaky_upsert(state):
        if failures:
            raise failures.pop()
        return await real_upsert(state)

    monkeypatch.setattr(controller.store, "upsert", flaky_upsert)
    assert await controller.handle_inbound_message(PARTITION, "yes") == APOLOGY
    assert await controller.handle_inbound_message(PARTITION, "yes") == NOTHING_TO_CONFIRM
    assert len(await controller.plugin.ledger.list_sales(PARTITION)) == 1


async def test_failed_ledger_write_keeps_the_confirmation(controller, monkeypatch):
    await controller.handle_inbound_message(PARTITION, "Sold 3 kits to Fernando market for 40")

    ledger = controller.plugin.ledger
    real_create = ledger.create_sale

    async def unavailable(*args, **kwargs):
        raise TransientStoreError("database busy", attempts=1)

    monkeypatch.setattr(ledger, "create_sale", unavailable)
    reply = await controller.handle_inbound_message(PARTITION, "yes")
    assert "Sale #" not in reply
    assert (await controller.store.get(PARTITION)).stage == PendingStage.AWAITING_CONFIRMATION

    monkeypatch.setattr(ledger, "create_sale", real_create)
    assert "Sale #1 saved" in await controller.handle_inbound_message(PARTITION, "yes")
    assert len(await ledger.list_sales(PARTITION)) == 1
