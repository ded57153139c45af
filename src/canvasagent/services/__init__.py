"""Host-facing services such as settings."""
