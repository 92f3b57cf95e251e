"""calsync: keeps a local event store in step with an external calendar."""

__version__ = "0.1.0"
