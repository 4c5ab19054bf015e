"""Iteration session engine driving an AI coding agent against a task document."""

__version__ = "0.1.0"
