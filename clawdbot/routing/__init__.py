"""Session key model."""
