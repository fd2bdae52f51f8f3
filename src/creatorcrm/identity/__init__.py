"""Mapping of external platform identities onto tenant-scoped leads."""

from .resolver import ExternalIdentityResolver, Resolution

__all__ = ["ExternalIdentityResolver", "Resolution"]
