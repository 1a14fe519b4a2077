"""
llmstash Configuration Module

Central configuration for the store: data root, remote registry
endpoints, HTTP client and retry policy settings.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def default_root() -> Path:
    """Store root from LLMSTASH_ROOT, falling back to ~/.llmstash."""
    return Path(os.environ.get("LLMSTASH_ROOT", Path.home() / ".llmstash")).expanduser()


@dataclass
class RetrySettings:
    """Bounded retry policy for registry requests and blob downloads."""
    max_retries: int = 5
    strategy: str = "exponential"  # exponential | fibonacci | fixed
    base_ms: int = 2
    factor: int = 500
    max_delay_seconds: float = 30.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "strategy": self.strategy,
            "base_ms": self.base_ms,
            "factor": self.factor,
            "max_delay_seconds": self.max_delay_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetrySettings":
        return cls(
            max_retries=data.get("max_retries", 5),
            strategy=data.get("strategy", "exponential"),
            base_ms=data.get("base_ms", 2),
            factor=data.get("factor", 500),
            max_delay_seconds=data.get("max_delay_seconds", 30.0),
        )


@dataclass
class HttpSettings:
    """HTTP client configuration."""
    proxy: Optional[str] = field(default_factory=lambda: os.environ.get("LLMSTASH_PROXY"))
    timeout: int = 15  # connect timeout, seconds
    chunk_timeout: int = 60  # read timeout between chunks, seconds
    chunk_size: int = 1024 * 1024
    retry: RetrySettings = field(default_factory=RetrySettings)

    @property
    def request_timeout(self) -> tuple:
        """(connect, read) timeout tuple for requests."""
        return (self.timeout, self.chunk_timeout)

    @property
    def proxies(self) -> Dict[str, str]:
        if not self.proxy:
            return {}
        return {"http": self.proxy, "https": self.proxy}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proxy": self.proxy,
            "timeout": self.timeout,
            "chunk_timeout": self.chunk_timeout,
            "chunk_size": self.chunk_size,
            "retry": self.retry.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HttpSettings":
        settings = cls(
            timeout=data.get("timeout", 15),
            chunk_timeout=data.get("chunk_timeout", 60),
            chunk_size=data.get("chunk_size", 1024 * 1024),
            retry=RetrySettings.from_dict(data.get("retry", {})),
        )
        # Prefer saved proxy, fallback to env
        if data.get("proxy"):
            settings.proxy = data["proxy"]
        return settings


@dataclass
class RegistrySettings:
    """Remote registry endpoints."""
    remote: str = "https://registry.ollama.ai"
    library: str = "https://ollama.com"
    client: HttpSettings = field(default_factory=HttpSettings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "remote": self.remote,
            "library": self.library,
            "client": self.client.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RegistrySettings":
        return cls(
            remote=data.get("remote", "https://registry.ollama.ai"),
            library=data.get("library", "https://ollama.com"),
            client=HttpSettings.from_dict(data.get("client", {})),
        )


@dataclass
class ModelSettings:
    """Model pull defaults."""
    category: str = "latest"
    max_workers: int = 4
    client: HttpSettings = field(default_factory=HttpSettings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "max_workers": self.max_workers,
            "client": self.client.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelSettings":
        return cls(
            category=data.get("category", "latest"),
            max_workers=data.get("max_workers", 4),
            client=HttpSettings.from_dict(data.get("client", {})),
        )


@dataclass
class LLMStashConfig:
    """Main configuration container."""
    root: Path = field(default_factory=default_root)
    registry: RegistrySettings = field(default_factory=RegistrySettings)
    model: ModelSettings = field(default_factory=ModelSettings)

    @property
    def config_file(self) -> Path:
        return self.root / "config.json"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "registry": self.registry.to_dict(),
            "model": self.model.to_dict(),
        }

    def save(self) -> None:
        """Save configuration to file."""
        self.root.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, root: Optional[Path] = None) -> "LLMStashConfig":
        """Load configuration from file or create default."""
        config = cls(root=Path(root).expanduser() if root else default_root())
        if config.config_file.exists():
            try:
                with open(config.config_file, encoding="utf-8") as f:
                    data = json.load(f)
                if "registry" in data:
                    config.registry = RegistrySettings.from_dict(data["registry"])
                if "model" in data:
                    config.model = ModelSettings.from_dict(data["model"])
            except (json.JSONDecodeError, KeyError, TypeError) as e:
                logger.warning(f"Could not load config, using defaults: {e}")
        return config


# Global configuration instance
_config: Optional[LLMStashConfig] = None


def get_config() -> LLMStashConfig:
    """Get or create the global configuration instance."""
    global _config
    if _config is None:
        _config = LLMStashConfig.load()
    return _config


def reset_config() -> None:
    """Reset global configuration (useful for testing)."""
    global _config
    _config = None
