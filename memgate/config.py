"""
Configuration module for the memgate gateway.

Loads service settings from config.yaml and secrets from environment variables.
Configuration is read once at startup and treated as read-only afterwards.
"""

import contextvars
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

import yaml
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Context variable carrying the trace id of the request being handled
trace_context: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "trace_id", default=None
)


class TraceLogFilter(logging.Filter):
    """Filter to inject the current request trace id into log records."""
    def filter(self, record):
        trace_id = trace_context.get()
        if trace_id is not None:
            record.trace_info = f" [{trace_id[:12]}]"
        else:
            record.trace_info = ""
        return True


# Default config file path, overridable for deployments
CONFIG_FILE = Path(
    os.getenv("MEMGATE_CONFIG", str(Path(__file__).parent.parent / "config.yaml"))
)


def _load_yaml_config() -> dict:
    """Load configuration from YAML file."""
    if CONFIG_FILE.exists():
        with open(CONFIG_FILE) as f:
            return yaml.safe_load(f) or {}
    return {}


# Load YAML config once at module import
_yaml_config = _load_yaml_config()


def _get_yaml(section: str, key: str, default=None):
    """Get a value from the YAML config."""
    return _yaml_config.get(section, {}).get(key, default)


def _get_yaml_section(section: str, default=None):
    """Get an entire section from the YAML config."""
    return _yaml_config.get(section, default or {})


@dataclass
class OpenAIConfig:
    """OpenAI API configuration."""
    # Secret from .env
    api_key: str = field(default_factory=lambda: os.getenv("OPENAI_API_KEY", ""))
    # Settings from YAML
    base_url: str = field(default_factory=lambda: _get_yaml("openai", "base_url", ""))


@dataclass
class AnthropicConfig:
    """Anthropic API configuration."""
    api_key: str = field(default_factory=lambda: os.getenv("ANTHROPIC_API_KEY", ""))
    # Anthropic requires max_tokens on every request
    default_max_tokens: int = field(
        default_factory=lambda: _get_yaml("anthropic", "default_max_tokens", 4096)
    )


@dataclass
class GoogleConfig:
    """Google Gemini API configuration."""
    api_key: str = field(default_factory=lambda: os.getenv("GOOGLE_API_KEY", ""))


@dataclass
class RateLimitConfig:
    """Token-bucket limits applied per upstream provider. 0 disables limiting."""
    max_burst: int = field(
        default_factory=lambda: _get_yaml_section("proxy").get("rate_limit", {}).get("max_burst", 15)
    )
    refill_per_minute: float = field(
        default_factory=lambda: _get_yaml_section("proxy").get("rate_limit", {}).get("refill_per_minute", 0)
    )

    @property
    def enabled(self) -> bool:
        return self.refill_per_minute > 0 and self.max_burst > 0


@dataclass
class ProxyConfig:
    """HTTP surface and upstream forwarding settings."""
    host: str = field(default_factory=lambda: _get_yaml("proxy", "host", "0.0.0.0"))
    port: int = field(default_factory=lambda: int(os.getenv("PORT", _get_yaml("proxy", "port", 8080))))
    upstream_timeout: float = field(
        default_factory=lambda: _get_yaml("proxy", "upstream_timeout", 60.0)
    )
    # Order in which adapters are asked to detect an unlabelled payload
    provider_priority: list[str] = field(
        default_factory=lambda: _get_yaml("proxy", "provider_priority", None)
        or ["anthropic", "openai", "google"]
    )
    # Route requests to an upstream by model-name prefix
    route_by_model: bool = field(
        default_factory=lambda: _get_yaml("proxy", "route_by_model", True)
    )
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)


@dataclass
class MemoryConfig:
    """Long-term memory configuration."""
    enabled: bool = field(
        default_factory=lambda: _get_yaml("memory", "enabled", True)
    )
    embedding_provider: Literal["openai", "google", "local"] = field(
        default_factory=lambda: _get_yaml("memory", "embedding_provider", "openai")
    )
    # Empty means the provider's default model
    embedding_model: str = field(
        default_factory=lambda: _get_yaml("memory", "embedding_model", "")
    )
    # Override embedding dimensions (pgvector indexes are limited to 2000 dims)
    # None = use model's default dimensions
    embedding_dimensions: int | None = field(
        default_factory=lambda: _get_yaml("memory", "embedding_dimensions", None)
    )
    embedding_timeout: float = field(
        default_factory=lambda: _get_yaml("memory", "embedding_timeout", 10.0)
    )
    # Secret from .env (contains credentials). Empty selects the in-memory store.
    postgres_url: str = field(default_factory=lambda: os.getenv("POSTGRES_URL", ""))
    table_name: str = field(
        default_factory=lambda: _get_yaml("memory", "table_name", "memories")
    )
    default_k: int = field(
        default_factory=lambda: _get_yaml("memory", "default_k", 5)
    )
    # None keeps every result regardless of score
    min_score: float | None = field(
        default_factory=lambda: _get_yaml("memory", "min_score", None)
    )
    # Store extracted facts instead of whole exchanges when patterns match
    extract_facts: bool = field(
        default_factory=lambda: _get_yaml("memory", "extract_facts", True)
    )


@dataclass
class AppConfig:
    """Application settings from YAML."""
    log_level: str = field(
        default_factory=lambda: _get_yaml("logging", "level", "INFO")
    )


@dataclass
class Config:
    """Main configuration container."""
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    anthropic: AnthropicConfig = field(default_factory=AnthropicConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    app: AppConfig = field(default_factory=AppConfig)

    def setup_logging(self) -> logging.Logger:
        """Configure and return the application logger."""
        # Reset existing handlers to ensure clean configuration
        root = logging.getLogger()
        if root.handlers:
            for handler in list(root.handlers):
                root.removeHandler(handler)

        logging.basicConfig(
            level=getattr(logging, self.app.log_level.upper()),
            format="%(asctime)s - %(name)s - %(levelname)s%(trace_info)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        # Add filter to the handler created by basicConfig
        for handler in logging.getLogger().handlers:
            handler.addFilter(TraceLogFilter())

        return logging.getLogger("memgate")

    def validate(self) -> list[str]:
        """
        Validate configuration and return list of missing/invalid settings.

        Returns:
            List of validation error messages, empty if all valid.
        """
        errors = []

        if not (self.openai.api_key or self.anthropic.api_key or self.google.api_key):
            errors.append(
                "At least one of OPENAI_API_KEY, ANTHROPIC_API_KEY or GOOGLE_API_KEY is required"
            )

        known = {"openai", "anthropic", "google"}
        unknown = [p for p in self.proxy.provider_priority if p not in known]
        if unknown:
            errors.append(f"proxy.provider_priority has unknown providers: {', '.join(unknown)}")

        # A missing embedding key only disables memory at startup
        if self.memory.enabled and self.memory.embedding_provider not in ("openai", "google", "local"):
            errors.append(f"Unknown memory.embedding_provider: {self.memory.embedding_provider}")

        return errors


# Global configuration instance
config = Config()
