#!/usr/bin/env python3

"""
Provider Types Enum - Central definition of supported LLM backend families
"""

from enum import Enum


class ProviderType(Enum):
    """
    Enumeration of supported LLM provider types.
    Used throughout the package for type safety and consistency.
    """

    OPENAI = "openai"
    OLLAMA = "ollama"

    @classmethod
    def get_display_names(cls) -> dict:
        """Get human-readable display names for each provider type"""
        return {
            cls.OPENAI: "OpenAI",
            cls.OLLAMA: "Ollama (Local)",
        }

    @classmethod
    def get_default_urls(cls) -> dict:
        """Get default API URLs for each provider type"""
        return {
            cls.OPENAI: "https://api.openai.com/v1",
            cls.OLLAMA: "http://localhost:11434",
        }

    @classmethod
    def get_default_models(cls) -> dict:
        """Get default/popular models for each provider type"""
        return {
            cls.OPENAI: [
                "gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-4", "gpt-3.5-turbo"
            ],
            cls.OLLAMA: [
                "llama3.1:8b", "codellama:7b", "mistral:7b", "qwen2.5-coder:7b"
            ],
        }

    @property
    def display_name(self) -> str:
        """Get human-readable display name for this provider type"""
        return self.get_display_names()[self]

    @property
    def default_url(self) -> str:
        """Get default API URL for this provider type"""
        return self.get_default_urls()[self]

    @property
    def default_models(self) -> list:
        """Get default models for this provider type"""
        return self.get_default_models()[self]

    def __str__(self) -> str:
        """String representation uses the enum value"""
        return self.value
