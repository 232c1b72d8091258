"""API routers."""

from . import callables
from . import health
from . import webhook

__all__ = ['callables', 'health', 'webhook']
