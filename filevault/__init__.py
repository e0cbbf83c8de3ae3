"""FileVault: multi-tenant file storage with content deduplication."""

__version__ = "0.2.0"
