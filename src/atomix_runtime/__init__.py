"""Control protocol transports for Atomix sidecars."""

from .client import HttpControlClient, HttpDialer  # noqa: F401
from .memory import InMemoryDialer, InMemoryRuntime  # noqa: F401

__all__ = [
    "HttpControlClient",
    "HttpDialer",
    "InMemoryDialer",
    "InMemoryRuntime",
]
