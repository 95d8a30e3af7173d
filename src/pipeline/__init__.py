"""Tile pyramid jobs and the transform dispatcher."""
