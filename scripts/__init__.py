"""Command-line entry points for facereco."""
