"""Detection and repair of chat bindings whose guild is no longer reachable."""

from .validator import BindingAuditEntry, BindingAuditReport, ChannelBindingValidator

__all__ = ["BindingAuditEntry", "BindingAuditReport", "ChannelBindingValidator"]
