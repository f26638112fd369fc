from .auth import AuthMiddleware
from .logging import RequestLoggingMiddleware

__all__ = ["AuthMiddleware", "RequestLoggingMiddleware"]
