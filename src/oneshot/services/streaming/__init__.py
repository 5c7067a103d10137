#!/usr/bin/env python3

from .chat_stream import ChatStream
from .message_accumulator import MessageAccumulator, MessageSnapshot
