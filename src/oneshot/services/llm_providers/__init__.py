#!/usr/bin/env python3

"""
LLM provider adapters, one per backend family
"""

from .base_provider import BaseLLMProvider, build_messages, format_context
from .provider_factory import LLMProviderFactory, ProviderFactory
from .openai_provider import OpenAIProvider, OpenAIProviderFactory
from .ollama_provider import OllamaProvider, OllamaProviderFactory
