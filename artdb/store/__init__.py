"""
Artifact, link and tag stores for ArtDB.
"""

from .artifacts import Artifact, ArtifactId, ArtifactStore, to_artifact_id
from .links import Link, LinkStore
from .tags import Tag, TagStore

__all__ = [
    "Artifact",
    "ArtifactId",
    "ArtifactStore",
    "to_artifact_id",
    "Link",
    "LinkStore",
    "Tag",
    "TagStore",
]
