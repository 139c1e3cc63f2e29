"""Driver tracking and order dispatch core."""

__version__ = "0.1.0"
