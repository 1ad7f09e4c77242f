"""Remote store interface and paths."""
