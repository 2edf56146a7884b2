"""Market window tracking."""
