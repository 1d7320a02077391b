"""Artifact storage backends."""

from .artifacts import (
    ArtifactStorage,
    LocalArtifactStorage,
    S3ArtifactStorage,
    StorageError,
    create_artifact_storage,
)

__all__ = [
    "ArtifactStorage",
    "LocalArtifactStorage",
    "S3ArtifactStorage",
    "StorageError",
    "create_artifact_storage",
]
