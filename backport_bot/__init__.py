"""Backport merged pull requests to release branches and track their progress with labels."""

__version__ = '0.1.0'
