#!/usr/bin/env python3

"""
OneShot exceptions - error taxonomy shared by the context, provider and
session layers.

Every error carries ``is_transient`` so callers can decide whether offering
a retry makes sense.
"""

from typing import Optional


class OneShotError(Exception):
    """Base exception for all OneShot errors"""

    is_transient = False


# Context resolution

class ContextError(OneShotError):
    """Base exception for context resolution failures"""

    def __init__(self, message: str, reference: Optional[str] = None):
        super().__init__(message)
        self.reference = reference


class ReferenceInvalidError(ContextError):
    """
    Exception raised when a reference string matches no known scheme.
    """
    def __init__(self, reference: str, reason: Optional[str] = None):
        message = f"Invalid context reference: {reference}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, reference)


class SourceNotFoundError(ContextError):
    """
    Exception raised when the referenced file, folder or clipboard does not exist.
    """
    def __init__(self, reference: str):
        super().__init__(f"Context source not found: {reference}", reference)


class AccessDeniedError(ContextError):
    """
    Exception raised when the referenced source exists but cannot be read.
    """
    def __init__(self, reference: str):
        super().__init__(f"Access denied: {reference}", reference)


class EncodingError(ContextError):
    """
    Exception raised when content cannot be decoded as text.
    """
    def __init__(self, reference: str, encoding: str = "utf-8"):
        super().__init__(f"Cannot decode {reference} as {encoding} text", reference)
        self.encoding = encoding


# Provider layer

class LLMProviderError(OneShotError):
    """Base exception for LLM provider errors"""
    pass


class APIProviderError(LLMProviderError):
    """General API provider error"""
    pass


class NotConfiguredError(LLMProviderError):
    """No provider selected, or the provider has not been authenticated"""
    pass


class AuthenticationError(LLMProviderError):
    """Authentication/authorization error"""
    pass


class ModelNotAvailableError(LLMProviderError):
    """Requested model is not offered by the provider"""

    def __init__(self, model_id: str, provider_id: Optional[str] = None):
        message = f"Model not available: {model_id}"
        if provider_id:
            message = f"{message} (provider: {provider_id})"
        super().__init__(message)
        self.model_id = model_id
        self.provider_id = provider_id


class ContextTooLargeError(LLMProviderError):
    """Prompt plus context exceeds the model's context window"""

    def __init__(self, current: int, maximum: int):
        super().__init__(f"Context too large: {current} tokens exceeds limit of {maximum}")
        self.current = current
        self.maximum = maximum


class InvalidParametersError(LLMProviderError):
    """Backend rejected the request parameters"""
    pass


class RateLimitError(LLMProviderError):
    """Rate limit exceeded error"""

    is_transient = True


class NetworkError(LLMProviderError):
    """Network connectivity error, including timeouts"""

    is_transient = True

    def __init__(self, message: str, timeout: bool = False):
        super().__init__(message)
        self.timeout = timeout


class ProviderUnavailableError(LLMProviderError):
    """Backend is reachable but not serving requests"""

    is_transient = True


# Session layer

class SessionError(OneShotError):
    """Base exception for session storage errors"""
    pass


class SessionNotFoundError(SessionError):
    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class MessageNotFoundError(SessionError):
    def __init__(self, message_id: str):
        super().__init__(f"Message not found: {message_id}")
        self.message_id = message_id


class StorageError(SessionError):
    """Underlying storage failed"""
    pass


class InvalidFormatError(SessionError):
    """Unsupported or malformed import/export format"""
    pass


class SessionExportError(SessionError):
    pass


class SessionImportError(SessionError):
    pass
