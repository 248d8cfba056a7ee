"""Persistence package for payment orchestration."""
from .base import AuditLog, PaymentRepository, WebhookRepository
from .connection import Database, build_engine
from .memory import InMemoryAuditLog, InMemoryPaymentRepository, InMemoryWebhookRepository
from .models import Base
from .repositories import SqlAuditLog, SqlPaymentRepository, SqlWebhookRepository

__all__ = [
    "AuditLog",
    "Base",
    "Database",
    "InMemoryAuditLog",
    "InMemoryPaymentRepository",
    "InMemoryWebhookRepository",
    "PaymentRepository",
    "SqlAuditLog",
    "SqlPaymentRepository",
    "SqlWebhookRepository",
    "WebhookRepository",
    "build_engine",
]
