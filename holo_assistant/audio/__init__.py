"""Speech recognition and synthesis backends."""
