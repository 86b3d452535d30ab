"""Notification extraction via an external text-understanding service.

The service is the only component allowed to talk to the LLM and the only
place where raw model output is mapped into transaction candidates.
"""

from push_ledger.extraction.parsing import promote_candidate
from push_ledger.extraction.prompts import NotificationBatchPrompt, NotificationPrompt
from push_ledger.extraction.service import ExtractionService

__all__ = ["ExtractionService", "NotificationBatchPrompt", "NotificationPrompt", "promote_candidate"]
