"""Grant opportunity harvesting: extraction, deduplication and transactional storage."""

__version__ = "0.1.0"
