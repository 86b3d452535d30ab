"""Services orchestrating ingestion and transaction maintenance."""

from push_ledger.services.ingestion import IngestionService, IngestResult

__all__ = ["IngestionService", "IngestResult"]
