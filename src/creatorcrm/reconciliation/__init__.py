"""Idempotent repair passes over leads and messages."""

from .engine import ReconciliationEngine

__all__ = ["ReconciliationEngine"]
