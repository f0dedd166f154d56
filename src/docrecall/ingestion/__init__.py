"""Per-format page extraction."""
