"""opctl - tracking engine for long-running API operations."""

__version__ = "1.0.0"
