"""FastAPI web application for Collab Image Generator.

This module provides a read-only HTTP API over the pipeline definition
and the build records written by the CLI.

All business logic is delegated to core modules in collab_imagegen/.
"""

from web.app import app, create_app

__all__ = ["app", "create_app"]
