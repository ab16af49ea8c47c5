"""Command-line interface for History Bridge."""
