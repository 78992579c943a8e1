"""Claudito: a web backend for running the Claude CLI against local projects."""

__version__ = "0.1.0"
