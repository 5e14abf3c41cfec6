"""Command-line interface for agent worker administration."""
