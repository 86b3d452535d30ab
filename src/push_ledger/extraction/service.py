"""Extraction service: turns notification text into transaction candidates.

Delegates to an Ollama-compatible generate endpoint over HTTP.
Features:
- Batch mode (one request per notification batch, JSON array answer)
- Single-notification mode (JSON object answer)
- Reassembly of newline-delimited partial responses
- Independent connect/read/write/pool timeouts plus an overall deadline
- Concurrency limiting via semaphore

Failure contract:
- Network error, timeout, HTTP error or an unparseable answer: the whole
  call reports no results (None); nothing is raised
- A malformed record inside a good answer: that record alone is None

Privacy Constraints (non-negotiable):
- Never log prompts or notification text at INFO level
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING

import httpx

from push_ledger.extraction.parsing import (
    assemble_response_text,
    locate_json_array,
    locate_json_object,
    parse_extraction_record,
)
from push_ledger.extraction.prompts import NotificationBatchPrompt, NotificationPrompt
from push_ledger.schemas.records import ExtractionContext, ExtractionResult, Notification

if TYPE_CHECKING:
    from push_ledger.config import Config, LLMConfig

logger = logging.getLogger(__name__)


class LLMConcurrencyLimiter:
    """Semaphore-based concurrency limiter for extraction requests.

    Prevents overwhelming the Ollama server with too many concurrent requests.
    Thread-safe for synchronous usage.
    """

    def __init__(self, max_concurrent: int = 2) -> None:
        self._semaphore = threading.Semaphore(max_concurrent)
        self._active_count = 0
        self._lock = threading.Lock()

    def acquire(self, timeout: float | None = None) -> bool:
        """Acquire a slot; returns False if none freed up within timeout."""
        acquired = self._semaphore.acquire(blocking=True, timeout=timeout)
        if acquired:
            with self._lock:
                self._active_count += 1
        return acquired

    def release(self) -> None:
        """Release a slot after request completes."""
        with self._lock:
            self._active_count -= 1
        self._semaphore.release()

    @property
    def active_requests(self) -> int:
        """Current number of active requests."""
        with self._lock:
            return self._active_count


class ExtractionService:
    """LLM-backed notification extraction.

    Usage:
        with ExtractionService(config) as extractor:
            results = extractor.extract_transactions(notifications, context)
    """

    def __init__(self, config: Config) -> None:
        """Initialize the extraction service.

        Args:
            config: Application configuration.
        """
        self.config = config
        self.llm_config: LLMConfig = config.llm

        headers = {}
        if self.llm_config.auth_header:
            # Support formats: "Bearer token" or "Custom-Header: value"
            if ":" in self.llm_config.auth_header:
                key, value = self.llm_config.auth_header.split(":", 1)
                headers[key.strip()] = value.strip()
            else:
                headers["Authorization"] = self.llm_config.auth_header

        self._client = httpx.Client(
            timeout=httpx.Timeout(
                connect=self.llm_config.connect_timeout_seconds,
                read=self.llm_config.read_timeout_seconds,
                write=self.llm_config.write_timeout_seconds,
                pool=self.llm_config.connect_timeout_seconds,
            ),
            headers=headers,
        )
        self._batch_prompt = NotificationBatchPrompt()
        self._single_prompt = NotificationPrompt()
        self._limiter = LLMConcurrencyLimiter(max_concurrent=self.llm_config.max_concurrent)

    @property
    def is_enabled(self) -> bool:
        """Check if extraction is enabled (SSOT)."""
        return self.llm_config.enabled

    @property
    def active_requests(self) -> int:
        """Current number of active extraction requests."""
        return self._limiter.active_requests

    def extract_transactions(
        self,
        notifications: list[Notification],
        context: ExtractionContext | None = None,
    ) -> list[ExtractionResult | None] | None:
        """Extract candidates for a batch of notifications with one request.

        Args:
            notifications: Notifications to extract, in order.
            context: Profile hints and previous transactions.

        Returns:
            One entry per notification (None where the record was unusable),
            or None if the whole request failed or extraction is disabled.
        """
        if not self.is_enabled:
            logger.debug("Extraction disabled, skipping %d notification(s)", len(notifications))
            return None
        if not notifications:
            return []

        content = self._generate(self._batch_prompt.build(notifications, context))
        if content is None:
            return None

        try:
            records = locate_json_array(content)
        except ValueError as e:
            logger.warning("Unparseable extraction response for batch of %d: %s",
                           len(notifications), e)
            return None

        if len(records) != len(notifications):
            logger.warning(
                "Extraction returned %d record(s) for %d notification(s)",
                len(records),
                len(notifications),
            )

        results = [parse_extraction_record(raw) for raw in records[: len(notifications)]]
        results.extend([None] * (len(notifications) - len(results)))
        return results

    def extract_transaction(
        self,
        notification: Notification,
        context: ExtractionContext | None = None,
    ) -> ExtractionResult | None:
        """Extract a candidate for a single notification.

        Returns:
            ExtractionResult (possibly incomplete) or None on failure.
        """
        if not self.is_enabled:
            return None

        content = self._generate(self._single_prompt.build(notification, context))
        if content is None:
            return None

        try:
            return parse_extraction_record(locate_json_object(content))
        except ValueError as e:
            logger.warning("Unparseable extraction response: %s", e)
            return None

    def _generate(self, prompt: str) -> str | None:
        """Call the generate endpoint and return the reassembled model output.

        Returns:
            Model output text, or None on failure/timeout.
        """
        deadline_seconds = self.llm_config.request_timeout_seconds
        if not self._limiter.acquire(timeout=deadline_seconds):
            logger.warning(
                "Extraction request timed out waiting for concurrency slot (max=%d, active=%d)",
                self.llm_config.max_concurrent,
                self._limiter.active_requests,
            )
            return None

        url = f"{self.llm_config.ollama_url}/api/generate"
        payload = {
            "model": self.llm_config.model,
            "prompt": prompt,
            "stream": self.llm_config.stream,
        }
        logger.debug("Calling %s model %s (prompt %d chars)", url, self.llm_config.model, len(prompt))

        try:
            deadline = time.monotonic() + deadline_seconds
            lines: list[str] = []
            with self._client.stream("POST", url, json=payload) as response:
                response.raise_for_status()
                for line in response.iter_lines():
                    if time.monotonic() > deadline:
                        logger.warning(
                            "Extraction request exceeded %.0fs deadline", deadline_seconds
                        )
                        return None
                    lines.append(line)

            content = assemble_response_text("\n".join(lines))
            logger.debug("Model %s returned %d chars", self.llm_config.model, len(content))
            return content

        except httpx.TimeoutException:
            logger.warning("Extraction request timed out (model %s)", self.llm_config.model)
            return None
        except httpx.HTTPStatusError as e:
            logger.error(
                "Extraction API error %s for model '%s' at %s",
                e.response.status_code,
                self.llm_config.model,
                self.llm_config.ollama_url,
            )
            return None
        except httpx.RequestError as e:
            logger.error("Extraction request failed: %s (URL: %s)", e, self.llm_config.ollama_url)
            return None
        except Exception as e:
            logger.exception("Unexpected error calling extraction service: %s", e)
            return None
        finally:
            self._limiter.release()

    def close(self) -> None:
        """Close HTTP client."""
        self._client.close()

    def __enter__(self) -> ExtractionService:
        """Enter context manager."""
        return self

    def __exit__(self, *args) -> None:
        """Exit context manager."""
        self.close()
