"""Observability: request context, structured logging, metrics and the ASGI
middleware that ties them together."""

__all__ = [
    "middleware",
    "metrics",
    "logger",
    "context",
]
