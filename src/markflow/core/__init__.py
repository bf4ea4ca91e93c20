"""Core models: states, paths and exceptions."""
