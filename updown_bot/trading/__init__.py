"""Trade decisions."""
