"""Application wiring for Parley."""

from parley.app.runtime import AppRuntime

__all__ = ["AppRuntime"]
