"""API routers."""

from . import entitlements
from . import health
from . import webhooks

__all__ = ['entitlements', 'health', 'webhooks']
