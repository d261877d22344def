"""Client-side orchestration of wardrobe item uploads."""
