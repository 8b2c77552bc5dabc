"""API middleware package."""

from src.signalhub.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
