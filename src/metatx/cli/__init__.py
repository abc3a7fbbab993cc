"""Command line tools for the meta-transaction gateway."""
