"""Command-line interface for smart-topics."""
