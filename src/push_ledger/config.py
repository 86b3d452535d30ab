"""
Configuration management (SSOT).

This module defines ALL configuration for the push-ledger application.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- No time-derived values are computed at import time; "now" is always
  taken at the point of use
- Every timeout of the extraction call is bounded and independently set
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class LLMConfig:
    """Extraction service (Ollama) configuration.

    SSOT for LLM settings:
    - enabled: Master switch; when off every notification becomes a placeholder
    - ollama_url: Can be localhost, LAN IP, or remote URL
    - auth_header: Optional auth header for proxied deployments
    - timeouts: request (overall deadline), connect, read and write are
      applied independently
    """

    enabled: bool = True
    ollama_url: str = "http://localhost:11434"
    auth_header: str | None = None
    model: str = "llama3.2"
    # Ask the server for newline-delimited partial responses
    stream: bool = False
    # Overall deadline for one extraction request (seconds)
    request_timeout_seconds: float = 120.0
    connect_timeout_seconds: float = 10.0
    # Inference can take tens of seconds before the first byte
    read_timeout_seconds: float = 90.0
    write_timeout_seconds: float = 30.0
    # Maximum concurrent extraction requests per process
    max_concurrent: int = 2

    def is_remote(self) -> bool:
        """Check if Ollama URL is remote (not localhost)."""
        url_lower = self.ollama_url.lower()
        return not any(
            local in url_lower
            for local in ["localhost", "127.0.0.1", "::1", "host.docker.internal"]
        )


@dataclass
class IngestionConfig:
    """Notification ingestion settings."""

    # Counterparty name given to placeholder transactions
    placeholder_name: str = "undefined"
    # Largest accepted notification batch
    max_batch_size: int = 100


@dataclass
class InvoiceConfig:
    """Invoice lifecycle settings."""

    # Apply overdue transitions whenever transactions are read via the service
    check_on_read: bool = True


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    llm: LLMConfig = field(default_factory=LLMConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    invoices: InvoiceConfig = field(default_factory=InvoiceConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/state.db"))

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if self.llm.enabled:
            if not self.llm.ollama_url:
                errors.append("llm.ollama_url is required when LLM is enabled")
            if not self.llm.model:
                errors.append("llm.model is required when LLM is enabled")

        for name in (
            "request_timeout_seconds",
            "connect_timeout_seconds",
            "read_timeout_seconds",
            "write_timeout_seconds",
        ):
            if getattr(self.llm, name) <= 0:
                errors.append(f"llm.{name} must be positive")

        if self.llm.max_concurrent < 1:
            errors.append("llm.max_concurrent must be at least 1")

        if self.ingestion.max_batch_size < 1:
            errors.append("ingestion.max_batch_size must be at least 1")

        if not self.ingestion.placeholder_name:
            errors.append("ingestion.placeholder_name must not be empty")

        return errors


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - PUSH_LEDGER_DB (state database path)
    - PUSH_LEDGER_LLM_ENABLED (true/false)
    - OLLAMA_URL
    - OLLAMA_MODEL
    - OLLAMA_TIMEOUT (overall request timeout in seconds)
    - OLLAMA_AUTH_HEADER

    Raises:
        ConfigValidationError: If a value cannot be interpreted
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    if not isinstance(data, dict):
        raise ConfigValidationError(f"{config_path} must contain a mapping")

    # LLM config
    llm_data = data.get("llm", {}) or {}
    llm_enabled_env = os.environ.get("PUSH_LEDGER_LLM_ENABLED", "").lower()
    llm_enabled = llm_data.get("enabled", True)
    if llm_enabled_env == "true":
        llm_enabled = True
    elif llm_enabled_env == "false":
        llm_enabled = False

    try:
        llm = LLMConfig(
            enabled=bool(llm_enabled),
            ollama_url=os.environ.get(
                "OLLAMA_URL", llm_data.get("ollama_url", "http://localhost:11434")
            ).rstrip("/"),
            auth_header=os.environ.get("OLLAMA_AUTH_HEADER", llm_data.get("auth_header")),
            model=os.environ.get("OLLAMA_MODEL", llm_data.get("model", "llama3.2")),
            stream=bool(llm_data.get("stream", False)),
            request_timeout_seconds=float(os.environ.get(
                "OLLAMA_TIMEOUT", llm_data.get("request_timeout_seconds", 120.0)
            )),
            connect_timeout_seconds=float(llm_data.get("connect_timeout_seconds", 10.0)),
            read_timeout_seconds=float(llm_data.get("read_timeout_seconds", 90.0)),
            write_timeout_seconds=float(llm_data.get("write_timeout_seconds", 30.0)),
            max_concurrent=int(llm_data.get("max_concurrent", 2)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigValidationError(f"Invalid llm configuration: {e}") from e

    # Ingestion
    ingestion_data = data.get("ingestion", {}) or {}
    ingestion = IngestionConfig(
        placeholder_name=ingestion_data.get("placeholder_name", "undefined"),
        max_batch_size=int(ingestion_data.get("max_batch_size", 100)),
    )

    # Invoices
    invoice_data = data.get("invoices", {}) or {}
    invoices = InvoiceConfig(
        check_on_read=bool(invoice_data.get("check_on_read", True)),
    )

    # State DB
    state_db = os.environ.get("PUSH_LEDGER_DB", data.get("state_db_path", "data/state.db"))

    return Config(
        llm=llm,
        ingestion=ingestion,
        invoices=invoices,
        state_db_path=Path(state_db),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# push-ledger configuration
#
# Environment overrides: PUSH_LEDGER_DB, PUSH_LEDGER_LLM_ENABLED,
# OLLAMA_URL, OLLAMA_MODEL, OLLAMA_TIMEOUT, OLLAMA_AUTH_HEADER

# Extraction service (Ollama)
llm:
  enabled: true                            # false: every notification becomes a placeholder
  ollama_url: "http://localhost:11434"     # Ollama server URL (localhost, LAN, or remote)
  auth_header: null                        # Optional auth header for proxied deployments
  model: "llama3.2"
  stream: false                            # Request newline-delimited partial output
  request_timeout_seconds: 120             # Overall deadline per extraction call
  connect_timeout_seconds: 10
  read_timeout_seconds: 90
  write_timeout_seconds: 30
  max_concurrent: 2                        # Max concurrent extraction requests

# Notification ingestion
ingestion:
  placeholder_name: "undefined"            # Name of transactions that could not be extracted
  max_batch_size: 100

# Invoice lifecycle
invoices:
  check_on_read: true                      # Settle overdue invoices when reading transactions

# State database path
state_db_path: "data/state.db"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
