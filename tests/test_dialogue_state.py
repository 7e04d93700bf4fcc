# tests/test_dialogue_state.py
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from agents.state import (
    CreateSaleDraft,
    DeleteSaleDraft,
    DialogueState,
    PendingStage,
    UpdateSaleDraft,
    dump_pending_action,
    load_pending_action,
)

NOW = datetime(2025, 10, 3, 15, 0, tzinfo=timezone.utc)
TTL = timedelta(minutes=15)


def test_new_state_has_no_pending_action():
    s = DialogueState(partition_key="p")
    assert s.stage == PendingStage.NONE
    assert not s.is_expired(NOW)


def test_stage_transitions():
    s = DialogueState(partition_key="p")
    s.stage_draft(CreateSaleDraft(product="Seasoned Salt"), TTL, now=NOW)
    assert s.stage == PendingStage.DRAFTING
    assert s.pending_expires_at == NOW + TTL

    s.await_confirmation(DeleteSaleDraft(sale_number=3), timedelta(minutes=5), now=NOW)
    assert s.stage == PendingStage.AWAITING_CONFIRMATION
    assert s.pending_confirmation is True

    assert s.clear_pending(PendingStage.COMMITTED) == PendingStage.COMMITTED
    assert s.stage == PendingStage.NONE
    assert s.pending_expires_at is None


def test_clear_pending_requires_terminal_outcome():
    s = DialogueState(partition_key="p")
    with pytest.raises(ValueError):
        s.clear_pending(PendingStage.DRAFTING)


def test_expire_if_stale():
    s = DialogueState(partition_key="p")
    s.await_confirmation(CreateSaleDraft(product="x"), TTL, now=NOW)
    assert s.expire_if_stale(NOW + timedelta(minutes=14)) is False
    assert s.expire_if_stale(NOW + TTL) is True
    assert s.stage == PendingStage.NONE


def test_inconsistent_pending_fields_are_rejected():
    with pytest.raises(ValidationError):
        DialogueState(partition_key="p", pending_confirmation=True)
    with pytest.raises(ValidationError):
        DialogueState(partition_key="p", pending_action=CreateSaleDraft())


def test_naive_datetimes_are_treated_as_utc():
    s = DialogueState(partition_key="p", last_message_at=datetime(2025, 10, 3, 12, 0))
    assert s.last_message_at.tzinfo is not None
    assert s.last_message_at == datetime(2025, 10, 3, 12, 0, tzinfo=timezone.utc)


def test_remember_keeps_previous_values_when_none_given():
    s = DialogueState(partition_key="p")
    s.remember(sale_number=4, customer_name="Ana")
    s.remember(customer_name=None)
    assert (s.last_sale_number, s.last_customer_name) == (4, "Ana")


def test_snapshot_is_frozen_copy():
    s = DialogueState(partition_key="p", display_name="Gabriel")
    s.stage_draft(CreateSaleDraft(product="Seasoned Salt", quantity=3), TTL, now=NOW)
    snap = s.snapshot()
    assert snap.stage == PendingStage.DRAFTING
    assert snap.pending_kind == "CREATE_SALE"
    assert snap.pending["quantity"] == 3
    with pytest.raises(ValidationError):
        snap.display_name = "Someone"


# ----------------------------- drafts -----------------------------
def test_merge_new_values_win_and_price_sides_reset():
    d = CreateSaleDraft(product="Seasoned Salt", quantity=2, price_per_unit=10.0, customer_name="Ana")
    merged = d.merged_with({"total_price": 40.0, "quantity": None})
    assert merged.total_price == 40.0
    assert merged.price_per_unit is None
    assert merged.quantity == 2
    assert d.price_per_unit == 10.0

    both = d.merged_with({"total_price": 40.0, "price_per_unit": 20.0})
    assert (both.price_per_unit, both.total_price) == (20.0, 40.0)


def test_changing_customer_clears_disambiguation():
    d = CreateSaleDraft(customer_name="Fernando Lima", customer_candidates=["Fernanda Lima"])
    assert d.merged_with({"customer_name": "Paulo"}).customer_candidates == []
    assert d.merged_with({"product": "x"}).customer_candidates == ["Fernanda Lima"]


def test_missing_fields():
    assert CreateSaleDraft().missing_fields() == ["product", "customer", "price"]
    d = CreateSaleDraft(product="x", customer_name="Ana", total_price=10.0, flagged_missing=["quantity", "sale_date"])
    assert d.missing_fields() == ["quantity"]
    d = CreateSaleDraft(product="x", customer_name="Ana", flagged_missing=["totalPrice"])
    assert d.missing_fields() == ["price"]


def test_pending_action_json_roundtrip_keeps_variant():
    for action in (
        CreateSaleDraft(product="x", sale_date=NOW),
        UpdateSaleDraft(sale_number=2, quantity=5, previous={"quantity": "2"}),
        DeleteSaleDraft(sale_number=7, summary="#7"),
    ):
        restored = load_pending_action(dump_pending_action(action))
        assert type(restored) is type(action)
        assert restored == action
    assert load_pending_action(None) is None


def test_update_draft_changes_only_lists_set_fields():
    d = UpdateSaleDraft(sale_number=1, quantity=5, notes="n")
    assert d.changes() == {"quantity": 5, "notes": "n"}
