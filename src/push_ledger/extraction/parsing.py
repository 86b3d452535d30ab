"""Parsing and validation of extraction service output.

The service answers with free text that is supposed to contain JSON, often
split over newline-delimited partial responses and occasionally wrapped in
prose or markdown fences. Everything here is pure and tolerant: a bad record
yields None, a bad document raises ValueError for the caller to absorb.

This is also the single place where a candidate is promoted to a
Transaction (or demoted to a placeholder).
"""

from __future__ import annotations

import json
import logging
from typing import Any

from push_ledger.schemas.records import (
    EditedBy,
    ExtractionResult,
    InvoiceStatus,
    Notification,
    Transaction,
    TransactionType,
    parse_timestamp,
    to_amount,
)

logger = logging.getLogger(__name__)

# Keys holding partial text in streamed chunks (generate / chat endpoints)
_TEXT_KEYS = ("response", "content")


def _chunk_text(chunk: Any) -> str | None:
    if not isinstance(chunk, dict):
        return None
    for key in _TEXT_KEYS:
        value = chunk.get(key)
        if isinstance(value, str):
            return value
    message = chunk.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
    return None


def assemble_response_text(body: str) -> str:
    """
    Reassemble the model output from a (possibly streamed) response body.

    Each line that is a JSON object carrying a partial text field contributes
    that text; other lines are skipped. If no line carries a text field the
    body is assumed to be the model output itself.
    """
    parts: list[str] = []
    for line in body.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            chunk = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON response line (%d chars)", len(line))
            continue
        text = _chunk_text(chunk)
        if text is not None:
            parts.append(text)

    if not parts:
        return body.strip()
    return "".join(parts)


def _strip_code_fence(content: str) -> str:
    content = content.strip()
    if content.startswith("```json"):
        content = content[7:]
    elif content.startswith("```"):
        content = content[3:]
    if content.endswith("```"):
        content = content[:-3]
    return content.strip()


def _embedded_values(content: str, opening: str):
    """Yield every JSON value that starts at an `opening` character."""
    decoder = json.JSONDecoder()
    index = content.find(opening)
    while index != -1:
        try:
            value, _ = decoder.raw_decode(content, index)
        except json.JSONDecodeError:
            pass
        else:
            yield value
        index = content.find(opening, index + 1)


def _candidates(content: str, opening: str) -> list:
    content = _strip_code_fence(content)
    if not content:
        raise ValueError("Empty response")

    try:
        return [json.loads(content)]
    except json.JSONDecodeError:
        return list(_embedded_values(content, opening))


def locate_json_array(content: str) -> list:
    """
    Find the JSON array embedded in a model answer.

    Surrounding prose may contain brackets of its own ("Found [1] item:"),
    so the first array holding objects wins over bare arrays. A lone object
    is accepted as a one-element array.

    Raises:
        ValueError: If no array can be parsed.
    """
    values = _candidates(content, "[")
    arrays = [v for v in values if isinstance(v, list)]
    for array in arrays:
        if any(isinstance(item, dict) for item in array):
            return array
    if arrays:
        return arrays[0]

    objects = [v for v in values + _candidates(content, "{") if isinstance(v, dict)]
    if objects:
        return [objects[0]]
    raise ValueError("No JSON array found in response")


def locate_json_object(content: str) -> dict:
    """
    Find the JSON object embedded in a model answer.

    Raises:
        ValueError: If no object can be parsed.
    """
    for value in _candidates(content, "{"):
        if isinstance(value, list) and len(value) == 1:
            value = value[0]
        if isinstance(value, dict):
            return value
    raise ValueError("No JSON object found in response")


def _parse_enum(enum_cls, value: Any):
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return enum_cls(value.strip().upper())
    except ValueError:
        return None


def parse_extraction_record(raw: Any) -> ExtractionResult | None:
    """
    Validate one record of the model output.

    Invalid fields are dropped individually, so the result may be
    incomplete. Returns None only when the record is not an object.
    """
    if not isinstance(raw, dict):
        logger.debug("Discarding non-object extraction record: %s", type(raw).__name__)
        return None

    result = ExtractionResult()

    amount = raw.get("amount")
    if amount is not None and amount != "":
        try:
            result.amount = abs(to_amount(amount))
        except ValueError:
            logger.debug("Discarding invalid amount in extraction record")

    name = raw.get("name")
    if isinstance(name, str) and name.strip():
        result.name = name.strip()

    result.type = _parse_enum(TransactionType, raw.get("type"))

    if result.type == TransactionType.INVOICE:
        due_date = raw.get("dueDate", raw.get("due_date"))
        if isinstance(due_date, str):
            try:
                result.due_date = parse_timestamp(due_date)
            except ValueError:
                logger.debug("Discarding invalid dueDate in extraction record")
        result.invoice_status = _parse_enum(
            InvoiceStatus, raw.get("invoiceStatus", raw.get("invoice_status"))
        )

    return result


def promote_candidate(
    notification: Notification,
    transaction_id: str,
    candidate: ExtractionResult | None,
    placeholder_name: str = "undefined",
) -> Transaction:
    """
    Build the transaction for a notification.

    A complete candidate becomes a fully populated AUTO transaction. A
    missing or incomplete candidate becomes a placeholder: zero amount,
    placeholder name, no type, so a human can correct it later.
    """
    if candidate is not None and candidate.is_complete:
        return Transaction(
            id=transaction_id,
            user_id=notification.user_id,
            timestamp=notification.timestamp,
            amount=candidate.amount,
            name=candidate.name,
            type=candidate.type,
            edited_by=EditedBy.AUTO,
            due_date=candidate.due_date,
            invoice_status=candidate.invoice_status,
        )

    if candidate is not None:
        logger.debug(
            "Incomplete extraction for notification %s (missing: %s)",
            notification.id,
            ", ".join(candidate.missing_fields),
        )

    return Transaction(
        id=transaction_id,
        user_id=notification.user_id,
        timestamp=notification.timestamp,
        amount=to_amount(0),
        name=placeholder_name,
        type=None,
        edited_by=EditedBy.AUTO,
    )
