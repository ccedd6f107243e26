"""Storage synchronization services."""
