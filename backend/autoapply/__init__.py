"""AutoApply backend: job matching feed and application lifecycle pipeline."""

__version__ = "0.1.0"
