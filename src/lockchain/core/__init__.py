"""Core configuration, data models and errors for lockchain."""
