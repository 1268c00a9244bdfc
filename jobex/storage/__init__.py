from jobex.storage.artifact_store import (
    ArtifactStore,
    InMemoryArtifactStore,
    SQLArtifactStore,
    create_artifact_store
)

__all__ = ['ArtifactStore', 'InMemoryArtifactStore', 'SQLArtifactStore', 'create_artifact_store']
