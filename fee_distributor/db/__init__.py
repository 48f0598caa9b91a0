"""ORM base class and the Amount column type (exact decimals on every backend)."""
