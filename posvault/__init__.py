"""posvault -- backup, versioning and change-log replication for a local-first POS."""

__version__ = "1.0.0"
