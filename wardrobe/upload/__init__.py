"""Batch upload and classification of wardrobe items."""
