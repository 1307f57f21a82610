"""API routers for docgate."""

from . import health
from . import approvals
from . import action_policies

__all__ = [
    "health",
    "approvals",
    "action_policies",
]
