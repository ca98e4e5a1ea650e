"""rollgate: blue-green canary releases with bounded rollback across Kubernetes clusters."""

__version__ = "0.1.0"
