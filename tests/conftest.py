import os

# Keep config loading away from a developer's real rollgate.yaml values
os.environ.setdefault("ROLLGATE_LEASE_BACKEND", "memory")

from tests.fixtures import *  # noqa: F401,F403,E402
