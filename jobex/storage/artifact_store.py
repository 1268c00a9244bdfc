"""
Artifact Store

Persistence for the final artifact of completed jobs. The job record only
keeps the reference returned by save(); callers resolve it with load().
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from sqlalchemy import select

from jobex.db.connection import Database
from jobex.db.models import ExtractionArtifact, generate_id

logger = logging.getLogger(__name__)


class ArtifactStore(ABC):
    """Storage collaborator for final job artifacts"""

    @abstractmethod
    def save(self, job_id: str, artifact: Dict[str, Any], owner_id: Optional[str] = None) -> str:
        """Persist an artifact

        Args:
            job_id: Job that produced the artifact
            artifact: JSON-serializable artifact
            owner_id: Owner of the job, if any

        Returns:
            Artifact reference
        """
        pass

    @abstractmethod
    def load(self, reference: str) -> Optional[Dict[str, Any]]:
        """Artifact for a reference, or None if unknown"""
        pass


class InMemoryArtifactStore(ArtifactStore):
    """Process-local store, the default"""

    def __init__(self):
        self._artifacts: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def save(self, job_id: str, artifact: Dict[str, Any], owner_id: Optional[str] = None) -> str:
        reference = generate_id('doc')
        with self._lock:
            self._artifacts[reference] = copy.deepcopy(artifact)
        logger.debug(f"Stored artifact {reference} for job {job_id}")
        return reference

    def load(self, reference: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            artifact = self._artifacts.get(reference)
        return copy.deepcopy(artifact) if artifact is not None else None

    def __len__(self) -> int:
        return len(self._artifacts)


class SQLArtifactStore(ArtifactStore):
    """
    SQLAlchemy-backed store.

    Usage:
        db = Database('jobex.db')
        store = SQLArtifactStore(db)
        ref = store.save('job_123', {'sections': {...}})
    """

    def __init__(self, db: Database):
        self.db = db
        self.db.initialize()

    def save(self, job_id: str, artifact: Dict[str, Any], owner_id: Optional[str] = None) -> str:
        with self.db.transaction() as session:
            # A retried save for the same job overwrites its artifact
            record = session.execute(
                select(ExtractionArtifact).where(ExtractionArtifact.job_id == job_id)
            ).scalar_one_or_none()
            if record is None:
                record = ExtractionArtifact(id=generate_id('doc'), job_id=job_id)
                session.add(record)
            record.owner_id = owner_id
            record.file_name = artifact.get('file_name')
            record.section_count = len(artifact.get('sections') or {})
            record.data = artifact
            reference = record.id

        logger.info(f"Saved artifact {reference} for job {job_id}")
        return reference

    def load(self, reference: str) -> Optional[Dict[str, Any]]:
        with self.db.session() as session:
            record = session.get(ExtractionArtifact, reference)
            return dict(record.data) if record else None


def create_artifact_store(storage_config: Dict[str, Any]) -> ArtifactStore:
    """Build the store named by the `storage` config section"""
    storage_type = storage_config.get('type', 'memory')
    if storage_type == 'memory':
        return InMemoryArtifactStore()
    if storage_type == 'sqlite':
        return SQLArtifactStore(Database(storage_config.get('path', 'jobex.db')))
    raise ValueError(f"Unsupported storage type: {storage_type}")
