# api/__init__.py
from api.server import (
    ServerConfig,
    configure_logging,
    create_app,
    app,
)

__all__ = [
    "ServerConfig",
    "configure_logging",
    "create_app",
    "app",
]
