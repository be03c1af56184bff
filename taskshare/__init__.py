"""Task sharing backend service."""
