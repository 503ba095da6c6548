"""Core models, events and errors."""
