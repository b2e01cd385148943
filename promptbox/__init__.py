"""promptbox: run declarative prompt templates against local and hosted models."""

__version__ = "0.3.0"
