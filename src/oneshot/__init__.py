#!/usr/bin/env python3

"""
OneShot - LLM chat client core

Context references, provider adapters with streaming, metrics and
conversation persistence.
"""

__version__ = "0.1.0"
