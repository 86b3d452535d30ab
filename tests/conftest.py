"""Test fixtures and utilities."""

from datetime import datetime
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from push_ledger.config import Config, IngestionConfig, InvoiceConfig, LLMConfig
from push_ledger.state_store import StateStore

# Fixed "now" for lifecycle tests (naive UTC)
FIXED_NOW = datetime(2025, 4, 15, 12, 0, 0)

SAMPLE_NOTIFICATIONS = [
    {
        "timestamp": "2025-04-01T09:15:00Z",
        "title": "Card payment",
        "body": "You paid 12,40 EUR at BILLA Graz with your debit card.",
    },
    {
        "timestamp": "2025-04-02T07:00:00Z",
        "title": "Incoming transfer",
        "body": "ACME GmbH sent you 2.450,00 EUR (salary April).",
    },
]

SAMPLE_INVOICE_NOTIFICATION = {
    "timestamp": "2025-04-03T10:00:00Z",
    "title": "New e-bill",
    "body": "Stadtwerke Graz: invoice over 89.90 EUR due on 2025-04-10.",
}


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_state.db"


@pytest.fixture
def store(temp_db) -> StateStore:
    """Fresh StateStore with all migrations applied."""
    return StateStore(temp_db, run_migrations=True)


@pytest.fixture
def config(temp_db) -> Config:
    """Configuration pointing at the temporary database."""
    return Config(
        llm=LLMConfig(enabled=True, ollama_url="http://localhost:11434", model="test-model"),
        ingestion=IngestionConfig(placeholder_name="undefined", max_batch_size=10),
        invoices=InvoiceConfig(check_on_read=True),
        state_db_path=temp_db,
    )


@pytest.fixture
def mock_extractor() -> MagicMock:
    """Extractor double; tests set extract_transactions.return_value."""
    extractor = MagicMock()
    extractor.extract_transactions.return_value = None
    return extractor


@pytest.fixture
def sample_notifications() -> list[dict]:
    """Two ordinary notifications (expense and income)."""
    return [dict(n) for n in SAMPLE_NOTIFICATIONS]


@pytest.fixture
def sample_invoice_notification() -> dict:
    """Notification announcing an invoice due on 2025-04-10."""
    return dict(SAMPLE_INVOICE_NOTIFICATION)
