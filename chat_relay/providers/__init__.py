"""Vendor adapters normalising chat APIs into one delta stream."""

from .base import ProviderAdapter
from .dify import DifyAdapter
from .factory import AdapterFactory, get_adapter
from .http import HttpTransport, KeyRoulette
from .ollama import OllamaAdapter
from .openai import OpenAIAdapter

__all__ = [
    "AdapterFactory",
    "DifyAdapter",
    "HttpTransport",
    "KeyRoulette",
    "OllamaAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "get_adapter",
]
