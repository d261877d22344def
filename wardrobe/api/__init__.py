"""HTTP access to the wardrobe backend."""

from .client import WardrobeAPIClient, WardrobeRequestError

__all__ = ["WardrobeAPIClient", "WardrobeRequestError"]
