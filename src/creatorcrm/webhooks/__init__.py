"""HTTP ingress for platform webhooks."""

from .app import create_app

__all__ = ["create_app"]
