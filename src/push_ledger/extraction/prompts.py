"""Prompt templates for notification extraction.

Prompts are versioned so stored results can be traced back to the wording
that produced them.
"""

from __future__ import annotations

import json
from dataclasses import dataclass

from push_ledger.schemas.records import (
    ExtractionContext,
    InvoiceStatus,
    Notification,
    TransactionType,
    format_timestamp,
)

# v2.0: batch mode with history context and invoice fields
PROMPT_VERSION = "v2.0"

_TYPES = ", ".join(t.value for t in TransactionType)
_INITIAL_STATUSES = f"{InvoiceStatus.CONFIRMED.value}, {InvoiceStatus.UNCONFIRMED.value}"


def _format_history(context: ExtractionContext | None) -> str:
    """Render previous transactions with their source notification text."""
    if context is None or not context.recent_transactions:
        return "No previous transactions."

    lines = []
    for txn in context.recent_transactions:
        source = context.notification_for(txn.id)
        entry = {
            "notification": source.body if source else None,
            "amount": float(txn.amount),
            "name": txn.name,
            "type": txn.type.value if txn.type else None,
            "invoiceStatus": txn.invoice_status.value if txn.invoice_status else None,
        }
        lines.append(f"- {json.dumps(entry, ensure_ascii=False)}")
    return "\n".join(lines)


def _format_user(context: ExtractionContext | None) -> str:
    profile = context.profile if context else None
    if profile is None:
        return "Unknown account holder."
    parts = []
    if profile.full_name:
        parts.append(f"Account holder: {profile.full_name}")
    if profile.company_name:
        parts.append(f"Employer/company: {profile.company_name}")
    return "\n".join(parts) or "Unknown account holder."


@dataclass
class NotificationBatchPrompt:
    """Prompt template for extracting a batch of notifications.

    Attributes:
        version: Prompt version for traceability.
        system_prompt: Instructions setting LLM behavior.
        user_template: Template for the batch with placeholders.
    """

    version: str = PROMPT_VERSION

    system_prompt: str = f"""You extract financial transactions from bank push notifications.

For every notification return one JSON object with:
- "amount": positive number with the transaction amount
- "name": counterparty (store, sender, company or person)
- "type": one of {_TYPES}
- "dueDate": ISO-8601 timestamp, only for INVOICE, otherwise null
- "invoiceStatus": one of {_INITIAL_STATUSES}, only for INVOICE, otherwise null

Rules:
1. Money sent between the account holder's own accounts is a TRANSFER
2. Money received from the account holder's employer is INCOME
3. Use the previous transactions to recognise recurring counterparties
4. Return a JSON array with exactly one object per notification, in order
5. Return only the array, no extra text"""

    user_template: str = """{user}

Previous transactions:
{history}

Notifications ({count}):
{notifications}

Return a JSON array of {count} objects."""

    def format_user_message(
        self,
        notifications: list[Notification],
        context: ExtractionContext | None = None,
    ) -> str:
        """Format the batch with user hints and history."""
        rendered = "\n".join(
            f"{i}. [{format_timestamp(n.timestamp)}] {n.title}: \"{n.body}\""
            for i, n in enumerate(notifications, start=1)
        )
        return self.user_template.format(
            user=_format_user(context),
            history=_format_history(context),
            count=len(notifications),
            notifications=rendered,
        )

    def build(
        self,
        notifications: list[Notification],
        context: ExtractionContext | None = None,
    ) -> str:
        """Full prompt text for the generate endpoint."""
        return f"{self.system_prompt}\n\n{self.format_user_message(notifications, context)}"


@dataclass
class NotificationPrompt:
    """Prompt template for extracting one notification."""

    version: str = PROMPT_VERSION

    template: str = (
        "Extract amount, counterparty name and transaction type from this bank "
        "notification: \"{body}\".\n"
        "{user}\n"
        "Return JSON {{\"amount\": <amount>, \"name\": \"<counterparty>\", "
        "\"type\": \"<" + _TYPES.replace(", ", "|") + ">\", "
        "\"dueDate\": <ISO-8601 or null>, \"invoiceStatus\": <" +
        _INITIAL_STATUSES.replace(", ", "|") + " or null>}}. "
        "Return only the object, no extra text."
    )

    def build(self, notification: Notification, context: ExtractionContext | None = None) -> str:
        """Full prompt text for the generate endpoint."""
        return self.template.format(body=notification.body, user=_format_user(context))
