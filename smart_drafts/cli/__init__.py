"""Command-line entry points for the pairing engine."""
