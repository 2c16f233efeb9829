"""HTTP surface for Threadline (FastAPI)."""

from threadline.api.app import create_app
from threadline.api.auth import CredentialValidator, StaticKeyValidator
from threadline.api.logging_config import configure_logging
from threadline.api.settings import ServerSettings

__all__ = [
    "CredentialValidator",
    "ServerSettings",
    "StaticKeyValidator",
    "configure_logging",
    "create_app",
]
