"""Command-line interface for the exporter."""
