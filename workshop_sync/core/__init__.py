"""Core configuration, logging, and error tracking."""
