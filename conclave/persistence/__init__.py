"""Conclave state persistence layer.

Provides SQLite-backed, workflow-scoped snapshot storage for sessions,
ledgers, phase gates and the event outbox, plus JSON/Markdown export.
"""
