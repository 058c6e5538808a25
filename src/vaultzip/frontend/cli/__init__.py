"""Command line frontend for VaultZip."""
