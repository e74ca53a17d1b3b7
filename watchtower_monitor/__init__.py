"""Periodic HTTP reachability checks with email alerts for failing servers."""

__version__ = "1.0.0"
