"""Infrastructure layer: cluster clients and release constants."""
