"""Domain records, sync models and the cache table."""
