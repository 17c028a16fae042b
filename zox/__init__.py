"""zox -- agent orchestration engine for a coding assistant."""

__version__ = "0.1.0"
