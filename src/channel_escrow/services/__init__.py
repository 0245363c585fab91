"""Application services: deal orchestration, timers, audit and stats."""

from channel_escrow.services.audit_log import AuditEntry, AuditLog, JsonlAuditSink, SqlAuditSink
from channel_escrow.services.deal_table import DealTable
from channel_escrow.services.orchestrator import ActionResult, DealOrchestrator
from channel_escrow.services.stats_service import InMemoryStatsSink, SqlStatsSink, StatsService
from channel_escrow.services.timers import DealTimers

__all__ = [
    "ActionResult",
    "AuditEntry",
    "AuditLog",
    "DealOrchestrator",
    "DealTable",
    "DealTimers",
    "InMemoryStatsSink",
    "JsonlAuditSink",
    "SqlAuditSink",
    "SqlStatsSink",
    "StatsService",
]
