"""HTTP API for the SoroSub payment service."""
from sorosub.api.routes import router

__all__ = ["router"]
