"""sqlgate - read-only SQL gateway for tool-invocation layers."""

from sqlgate.__about__ import __version__

__all__ = ["__version__"]
