# agents/controller.py
"""
Dialogue controller: one inbound message in, one reply out.

    handle_inbound_message(partition_key, text) -> str

Turn:
  1. load (or create) the partition's DialogueState
  2. expire a stale pending action and persist that before routing
  3. deterministic shortcuts (candidate pick, bare amount for a draft missing only price)
  4. otherwise ask the intent oracle; any failure becomes UNKNOWN
  5. route CONFIRM / CANCEL / UNKNOWN here, everything else to the sales plugin;
     CONFIRM first claims the stored confirmation so it commits at most once
  6. touch + persist, return the reply
"""
from __future__ import annotations

import logging
import re
from typing import Optional

from agents.intents import Intent, IntentAction, IntentEntities
from agents.oracle import IntentOracle, build_oracle, parse_number
from agents.sales_plugin import PluginResponse, SalesPlugin
from agents.state import CreateSaleDraft, DialogueState, PendingStage
from common.config_loader import Settings
from common.logging_config import partition_context
from db.session import Database
from services.customer_service import CustomerResolver
from services.sales_service import LedgerService
from services.state_store import CachedStateStore, DialogueStateStore
from utils.logger import truncate

logger = logging.getLogger("sales-ledger")

APOLOGY = "Sorry, I couldn't process your message right now. Please try again in a moment."
NOTHING_TO_CONFIRM = "There's nothing waiting for confirmation right now."
NOTHING_TO_CANCEL = "There's nothing to cancel right now."
CANCELLED = "Okay, cancelled. Nothing was saved."
EXPIRED_NOTE = "(Your previous pending request expired and was discarded.)"

HELP_TEXT = (
    "I can help you record and look up sales. Try:\n"
    "- \"Sold 3 kits to Fernando Market for 40\"\n"
    "- \"Show my sales this week\"\n"
    "- \"Change sale #12 quantity to 5\"\n"
    "- \"Delete sale #12\"\n"
    "- \"How is customer Ana doing?\""
)

_BARE_AMOUNT_RE = re.compile(r"^\s*\$?\s*\d+(?:[.,]\d+)?\s*$")


class DialogueController:
    def __init__(self, store, oracle: IntentOracle, plugin: SalesPlugin, settings: Settings):
        self.store = store
        self.oracle = oracle
        self.plugin = plugin
        self.settings = settings

    @classmethod
    def from_settings(
        cls,
        database: Database,
        settings: Settings,
        oracle: Optional[IntentOracle] = None,
    ) -> "DialogueController":
        customers = CustomerResolver(
            database.session_factory,
            similarity_threshold=settings.similarity_threshold,
            max_similar=settings.max_similar,
        )
        ledger = LedgerService(
            database.session_factory,
            customers,
            max_attempts=settings.sale_number_max_attempts,
            backoff_seconds=settings.sale_number_backoff_seconds,
        )
        store = CachedStateStore(
            DialogueStateStore(database.session_factory),
            max_entries=settings.state_cache_size,
            ttl_seconds=settings.state_cache_ttl_seconds,
        )
        return cls(
            store=store,
            oracle=oracle or build_oracle(settings),
            plugin=SalesPlugin(ledger, customers, settings),
            settings=settings,
        )

    # ---------- public ----------
    async def handle_inbound_message(self, partition_key: str, text: str) -> str:
        with partition_context(partition_key):
            try:
                return await self._turn(partition_key, text or "")
            except Exception:
                logger.exception("Unhandled error while handling inbound message")
                return APOLOGY

    # ---------- turn ----------
    async def _load_state(self, partition_key: str) -> DialogueState:
        state = await self.store.get(partition_key)
        if state is None:
            state = DialogueState(
                partition_key=partition_key,
                display_name=self.settings.salesperson_for(partition_key),
            )
            logger.info("New conversation for %s", state.display_name)
        return state

    async def _turn(self, partition_key: str, text: str) -> str:
        logger.info("Inbound: %s", truncate(text, 200))
        state = await self._load_state(partition_key)

        expired = state.expire_if_stale()
        if expired:
            state = await self.store.upsert(state)

        reply = await self._shortcut(state, text)
        if reply is None:
            intent = await self._interpret_safely(text, state)
            reply = await self._route(intent, state)

        message = reply.message
        if expired and state.stage == PendingStage.NONE and not reply.success:
            message = f"{EXPIRED_NOTE}\n{message}"

        state.touch()
        await self.store.upsert(state)
        logger.info("Reply (%s): %s", "ok" if reply.success else "fail", truncate(message, 200))
        return message

    async def _shortcut(self, state: DialogueState, text: str) -> Optional[PluginResponse]:
        picked = self.plugin.pick_candidate(state, text)
        if picked is not None:
            logger.info("Shortcut: customer candidate pick")
            return picked

        draft = state.pending_action
        if (
            isinstance(draft, CreateSaleDraft)
            and state.stage == PendingStage.DRAFTING
            and draft.missing_fields() == ["price"]
            and _BARE_AMOUNT_RE.match(text)
        ):
            amount = parse_number(text)
            if amount is not None and amount > 0:
                logger.info("Shortcut: bare amount %.2f for open draft", amount)
                intent = Intent(
                    action=IntentAction.CREATE_SALE,
                    confidence=1.0,
                    entities=IntentEntities(total_price=amount),
                    original_message=text,
                )
                return await self.plugin.handle(intent, state)
        return None

    async def _interpret_safely(self, text: str, state: DialogueState) -> Intent:
        try:
            return await self.oracle.interpret(text, state.snapshot())
        except Exception as e:
            logger.warning("Oracle failed, treating message as UNKNOWN: %s", e)
            return Intent.unknown(text)

    async def _route(self, intent: Intent, state: DialogueState) -> PluginResponse:
        action = intent.action
        if action == IntentAction.CONFIRM_ACTION:
            if state.stage != PendingStage.AWAITING_CONFIRMATION:
                return PluginResponse(NOTHING_TO_CONFIRM, success=False)
            # take the confirmation in storage first so no other turn can replay it
            if not await self.store.claim_pending(state):
                state.adopt(await self._load_state(state.partition_key))
                return PluginResponse(NOTHING_TO_CONFIRM, success=False)
            return await self.plugin.handle_confirm(state)

        if action == IntentAction.CANCEL_ACTION:
            if state.pending_action is None:
                return PluginResponse(NOTHING_TO_CANCEL, success=False)
            state.clear_pending(PendingStage.CANCELLED)
            return PluginResponse(CANCELLED)

        if action == IntentAction.UNKNOWN:
            return PluginResponse(HELP_TEXT, success=False)

        return await self.plugin.handle(intent, state)


__all__ = ["DialogueController", "HELP_TEXT", "NOTHING_TO_CONFIRM", "NOTHING_TO_CANCEL"]
