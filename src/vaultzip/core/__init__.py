"""Core building blocks: config, models, validation, streams and storage."""
