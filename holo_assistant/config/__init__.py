"""User settings and filesystem locations."""
