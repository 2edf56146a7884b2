"""Per-window scoring."""
