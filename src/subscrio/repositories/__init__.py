"""Repository interfaces and in-memory implementations."""
