"""Cross-border payment orchestration with compensating rollback and signed webhooks."""

__version__ = "1.0.0"
