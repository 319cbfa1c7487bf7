"""
In-process cache tier.
"""

from .bounded_cache import BoundedCache, EvictionListener

__all__ = ["BoundedCache", "EvictionListener"]
