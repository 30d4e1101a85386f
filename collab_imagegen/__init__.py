"""Collab Image Generator - build pipeline for the collab server image.

This package owns the two-stage container build that compiles the collab
server binary and assembles its minimal runtime image.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
