# tests/conftest.py
import sys
from pathlib import Path
from typing import Dict, List, Optional

# --- Path Setup ---
# Must run before application imports so the flat top-level packages resolve.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

import pytest
import pytest_asyncio

from agents.intents import Intent, IntentAction, IntentEntities
from agents.oracle import IntentOracle
from agents.state import DialogueSnapshot
from common.config_loader import Settings
from db.session import Database
from services.customer_service import CustomerResolver
from services.sales_service import LedgerService

PARTITION = "5511999990001"


class ScriptedOracle(IntentOracle):
    """
    Test double for the intent oracle.

    Maps a message (exact text, case-insensitive) to an Intent; anything
    unmapped is UNKNOWN. Every call is recorded with the snapshot it saw.
    """

    def __init__(self, script: Optional[Dict[str, Intent]] = None):
        self.script = {k.lower(): v for k, v in (script or {}).items()}
        self.calls: List[tuple] = []

    def on(self, message: str, action: IntentAction, **entities) -> "ScriptedOracle":
        missing = entities.pop("missing_fields", [])
        self.script[message.lower()] = Intent(
            action=action,
            confidence=0.95,
            entities=IntentEntities(**entities),
            missing_fields=missing,
            original_message=message,
        )
        return self

    async def interpret(self, message: str, snapshot: DialogueSnapshot) -> Intent:
        self.calls.append((message, snapshot))
        intent = self.script.get(message.lower())
        if intent is None:
            return Intent.unknown(message)
        return intent.model_copy(deep=True)


class ExplodingOracle(IntentOracle):
    async def interpret(self, message: str, snapshot: DialogueSnapshot) -> Intent:
        raise RuntimeError("model endpoint unavailable")


# --- Core Test Fixtures ---

@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        salespeople={PARTITION: "Gabriel"},
        state_cache_size=0,
        sale_number_max_attempts=25,
        sale_number_backoff_seconds=0.01,
    )


@pytest_asyncio.fixture(scope="function")
async def database(tmp_path) -> Database:
    """A fresh file-backed SQLite database per test, schema created, disposed afterwards."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await db.init()
    yield db
    await db.dispose()


@pytest.fixture
def customers(database: Database) -> CustomerResolver:
    return CustomerResolver(database.session_factory)


@pytest.fixture
def ledger(database: Database, customers: CustomerResolver, settings: Settings) -> LedgerService:
    return LedgerService(
        database.session_factory,
        customers,
        max_attempts=settings.sale_number_max_attempts,
        backoff_seconds=settings.sale_number_backoff_seconds,
    )


@pytest.fixture
def oracle() -> ScriptedOracle:
    return ScriptedOracle()


@pytest.fixture
def exploding_oracle() -> ExplodingOracle:
    return ExplodingOracle()
