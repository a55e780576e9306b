"""Core agent model and correlation engine."""
