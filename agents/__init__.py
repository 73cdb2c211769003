"""Task-tracker agents."""
