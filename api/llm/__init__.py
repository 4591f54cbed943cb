"""HTTP access to language-model providers and other upstream APIs."""

from .provider_client import Completion, LLMProvider, RequestSpec, ResilientProviderClient

__all__ = ["Completion", "LLMProvider", "RequestSpec", "ResilientProviderClient"]
