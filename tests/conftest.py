"""Root conftest — shared test configuration."""

import os

# Tests never talk to a real gateway or database
os.environ.setdefault(
    "SIGNING_CREDENTIAL", "AAECAwQFBgcICQoLDA0ODxAREhMUFRYXGBkaGxwdHh8=",
)
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("NETWORK_ENDPOINT", "http://gateway.test")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
