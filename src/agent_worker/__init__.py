"""Autonomous agent worker: claims workspace tasks and runs an AI coding CLI against them."""

__version__ = "0.1.0"
