"""Threaded AI review conversations anchored to line ranges of source text."""

__version__ = "0.1.0"
