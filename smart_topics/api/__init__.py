"""HTTP API for the smart-topics service."""
