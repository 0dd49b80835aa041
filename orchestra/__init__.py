"""Orchestra: orchestration core for an AI coding assistant."""

__version__ = "0.1.0"
