"""Conclave schema definitions.

All Pydantic v2 models for committee decisions, compliance, phase gates
and engine configuration.
"""
