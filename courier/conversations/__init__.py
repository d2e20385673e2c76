"""Contacts, threads and the inbound/outbound message flows."""

from .inbound import InboundMessage, InboundResult, InboundService
from .outbound import OutboundService, SendResult
from .threads import ThreadResolver

__all__ = [
    "InboundMessage",
    "InboundResult",
    "InboundService",
    "OutboundService",
    "SendResult",
    "ThreadResolver",
]
