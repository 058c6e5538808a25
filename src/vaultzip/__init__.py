"""VaultZip: envelope-encrypted file vault with self-describing download bundles."""

__version__ = "0.1.0"
