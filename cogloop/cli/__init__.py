"""Command-line interface for cogloop."""
