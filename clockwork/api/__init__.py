"""
API package initialization
"""

# Import all routers to make them available
from . import auth, billing, clients, stripe_webhook, usage

__all__ = ["auth", "billing", "clients", "stripe_webhook", "usage"]
