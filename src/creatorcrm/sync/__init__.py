"""Bulk import of platform members as leads."""

from .members import MemberSyncOrchestrator

__all__ = ["MemberSyncOrchestrator"]
