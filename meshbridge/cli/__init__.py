"""Command-line interface for meshbridge."""
