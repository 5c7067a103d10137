#!/usr/bin/env python3

from .chat_controller import ChatController

__all__ = ['ChatController']
