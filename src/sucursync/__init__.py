"""sucursync: branch servers that exchange uploads, backups and directories."""

__version__ = "0.1.0"

from sucursync.server.app import create_app
from sucursync.server.auth import (
    APIKeyAuthProvider,
    AuthContext,
    AuthProvider,
    HeaderAuthProvider,
    NoAuthProvider,
)

__all__ = [
    "__version__",
    "APIKeyAuthProvider",
    "AuthContext",
    "AuthProvider",
    "HeaderAuthProvider",
    "NoAuthProvider",
    "create_app",
]
