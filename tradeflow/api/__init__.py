"""HTTP surface of the tradeflow engine."""

from .routes import router

__all__ = ["router"]
