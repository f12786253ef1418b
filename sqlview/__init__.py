"""sqlview: auditable SQLite access and query-execution core."""

__version__ = "0.1.0"
