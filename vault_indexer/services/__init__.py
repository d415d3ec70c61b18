"""Read-side query services."""
