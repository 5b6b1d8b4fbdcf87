"""Settings and error types."""
