"""Command-line interface for the validators engine."""
