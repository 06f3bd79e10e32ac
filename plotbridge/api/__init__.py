"""
API module for the plotter bridge.

Provides the HTTP ingestion endpoint and status/log endpoints.
"""

from .server import create_app, split_batch, APIServer

__all__ = ['create_app', 'split_batch', 'APIServer']
