"""Configuration module for llmstash."""

from .settings import (
    HttpSettings,
    LLMStashConfig,
    ModelSettings,
    RegistrySettings,
    RetrySettings,
    get_config,
    reset_config,
)

__all__ = [
    "HttpSettings",
    "LLMStashConfig",
    "ModelSettings",
    "RegistrySettings",
    "RetrySettings",
    "get_config",
    "reset_config",
]
