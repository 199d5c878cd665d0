from __future__ import annotations

from cfproxy.api.routes.proxy import router as proxy_router

__all__ = ["proxy_router"]
