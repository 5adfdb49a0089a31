"""Command-line interface modules for the sessionizer."""
