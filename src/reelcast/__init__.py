"""Orchestration core for generating videos and publishing them as reels."""

__version__ = "0.1.0"
