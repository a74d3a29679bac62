"""API middleware package."""

from src.copileo.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
