"""
Bank push-notification → Transaction extraction → Invoice lifecycle tracking

A deterministic, testable pipeline that turns raw bank notification text
into structured transactions with idempotent persistence, LLM-assisted
extraction with placeholder fallback, and an invoice payment state machine.
"""

__version__ = "0.1.0"
