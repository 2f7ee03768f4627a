"""Compliance checking and tracking.

Runs pluggable checks against requirements, keeps the append-only result
ledger with its derived score and violations, and turns a ledger into a
gate decision.
"""
