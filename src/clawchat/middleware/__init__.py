"""Middleware for the ClawChat application."""

from clawchat.middleware.prometheus_middleware import PrometheusMiddleware

__all__ = ["PrometheusMiddleware"]
