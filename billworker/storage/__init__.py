"""
Result and artifact storage.
"""

from .artifacts import ArtifactSink

__all__ = ["ArtifactSink"]
