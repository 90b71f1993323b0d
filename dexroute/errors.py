from __future__ import annotations


class DexRouteError(Exception):
    """Base class for errors raised by the routing core."""


class ConfigurationError(DexRouteError):
    """Deployment or programmer error: missing wrapped native, unsupported chain, unknown dex id."""


class ExecutionEncodingError(DexRouteError):
    """A quoted route could not be re-expressed as calldata (bad fee tier, broken path)."""


class NoRouteFound(DexRouteError):
    """No plugin produced a candidate for the requested pair."""

    def __init__(self, message: str = "no route found"):
        super().__init__(message)


class QuoteRequestError(DexRouteError, ValueError):
    """Invalid quote request input."""
