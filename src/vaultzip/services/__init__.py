"""Orchestration services for registration, upload, download and unbundling."""
