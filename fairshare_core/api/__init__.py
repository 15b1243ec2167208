"""HTTP surface of the allocation engine."""

from fairshare_core.api.admin import create_admin_router
from fairshare_core.api.app import create_app

__all__ = ["create_admin_router", "create_app"]
