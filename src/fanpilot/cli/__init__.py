"""
CLI package for fanpilot

This package provides the command-line interface for running and
monitoring the fan daemon.
"""

from .interface import CLI, main

__all__ = ['CLI', 'main']
