"""Service package exports."""
