"""MongoDB connection helpers."""
