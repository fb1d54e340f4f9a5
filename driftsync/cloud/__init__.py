"""Remote store transport."""

from .client import CloudClient

__all__ = ["CloudClient"]
