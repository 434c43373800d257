"""Inbound message handling and proactive sends."""

from .orchestrator import MessageOrchestrator
from .proactive import ProactiveSender

__all__ = ["MessageOrchestrator", "ProactiveSender"]
