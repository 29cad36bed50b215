"""Web service for TARA.

``flask_app`` serves the chat endpoint consumed by the chat pipeline.
"""

from .flask_app import create_app, run_app  # noqa: F401

__all__ = ["create_app", "run_app"]
