"""Core release domain: models, errors, and orchestration services."""
