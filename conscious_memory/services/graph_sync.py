"""
Knowledge graph sync: projects memories, their extracted entities and their tags into Neptune.

The graph is a derived, disposable view of the memory index. Every write is a merge keyed by a
deterministic node id, so any run can be repeated without creating duplicates. Per-memory
failures are recorded on the memory and retried by later runs; only an unreachable store aborts
a run.
"""

import re
import threading
from dataclasses import asdict
from itertools import islice
from typing import Any, Dict, List, Optional

from ..models.core import ExtractionResult, Memory, MemoryFilter, SyncResult, SyncState
from ..models.errors import StoreConnectivityError, SyncItemError
from ..utils.config import SyncConfig
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient
from ..utils.timestamp_utils import to_iso, utc_now
from .entity_extraction import EntityExtractor
from .memory_repository import MemoryRepository

logger = get_logger(__name__)

MEMORY_LABEL = 'Memory'
TAG_LABEL = 'Tag'
DEFAULT_ENTITY_LABEL = 'Entity'
HAS_TAG = 'HAS_TAG'
MENTIONS = 'MENTIONS'
DEFAULT_RELATIONSHIP_TYPE = 'RELATES_TO'

_RESERVED_LABELS = {MEMORY_LABEL, TAG_LABEL}
_RESERVED_PROPERTIES = {'id'}


def memory_node_id(memory_id: str) -> str:
    return f'{MEMORY_LABEL}_{memory_id}'


def tag_node_id(tag: str) -> str:
    return f'{TAG_LABEL}_{tag}'


def sanitize_label(label: str) -> str:
    """Turn an extracted entity type into a CamelCase vertex label ('programming language' -> 'ProgrammingLanguage')."""
    parts = re.split(r'[^0-9A-Za-z]+', label or '')
    sanitized = ''.join(part[:1].upper() + part[1:] for part in parts if part)
    if not sanitized or sanitized[0].isdigit() or sanitized in _RESERVED_LABELS:
        return DEFAULT_ENTITY_LABEL
    return sanitized


def sanitize_relationship_type(rel_type: str) -> str:
    """Turn an extracted relationship type into an UPPER_SNAKE edge label ('works on' -> 'WORKS_ON')."""
    sanitized = re.sub(r'[^0-9A-Za-z]+', '_', rel_type or '').strip('_').upper()
    if not sanitized or sanitized in (HAS_TAG, MENTIONS):
        return DEFAULT_RELATIONSHIP_TYPE
    if sanitized[0].isdigit():
        return f'REL_{sanitized}'
    return sanitized


def normalize_entity_name(name: str) -> str:
    return '_'.join(name.lower().split())


def entity_node_id(label: str, name: str) -> str:
    """Deterministic entity id, so the same entity extracted from different memories is one vertex."""
    return f'Entity_{label}_{normalize_entity_name(name)}'


class GraphSyncEngine:
    """Eventually consistent projection of the memory index into the knowledge graph."""

    def __init__(self, repository: MemoryRepository, graph: NeptuneClient, extractor: EntityExtractor, config: SyncConfig):
        """
        Initialize the sync engine.

        Args:
            repository: Memory repository to read candidates from and record outcomes in
            graph: Graph store client
            extractor: Entity extractor
            config: Batch size and retry limits
        """
        self.repository = repository
        self.graph = graph
        self.extractor = extractor
        self.config = config

        self._run_lock = threading.Lock()

        self.last_sync_time = None
        self.last_result: Optional[SyncResult] = None
        self.last_error: Optional[str] = None
        self.total_runs = 0

    def run_sync(self, full_resync: bool = False) -> SyncResult:
        """
        Run one sync pass: remove the vertices of deleted memories, then project candidates.

        Args:
            full_resync: Re-project every memory instead of only unsynced and retryable failed ones

        Returns:
            SyncResult with status 'skipped' if another run is in progress

        Raises:
            StoreConnectivityError: If the graph store or the vector store is unreachable
        """
        if not self._run_lock.acquire(blocking=False):
            logger.info('Graph sync already running, skipping this run')
            return SyncResult(status='skipped')

        result = SyncResult(started_at=utc_now())
        try:
            self.graph.check_connection()
            self._remove_orphans(result)

            candidates = self._candidates(full_resync)
            logger.info(f'Graph sync found {len(candidates)} memories to process (full_resync={full_resync})')

            for memory in candidates:
                self._sync_one(memory, result)

            result.finished_at = utc_now()
            self.last_sync_time = result.finished_at
            self.last_result = result
            self.last_error = None
            logger.info(f'Graph sync completed: processed={result.processed}, errors={result.errors}, '
                        f'skipped={result.skipped}, removed={result.removed}')
            return result

        except StoreConnectivityError as e:
            self.last_error = str(e)
            logger.error(f'Graph sync aborted: {e}')
            raise
        finally:
            self.total_runs += 1
            self._run_lock.release()

    def _candidates(self, full_resync: bool) -> List[Memory]:
        if full_resync:
            return list(self.repository.list_all())
        memory_filter = MemoryFilter(sync_states=[SyncState.UNSYNCED, SyncState.FAILED], max_sync_retries=self.config.max_retries)
        return list(islice(self.repository.list_all(memory_filter), self.config.batch_size))

    def _remove_orphans(self, result: SyncResult) -> None:
        """Delete Memory vertices whose memory no longer exists in the index, whichever process deleted it."""
        # Graph ids are listed before the index is read, so a vertex projected concurrently by
        # another process always has its memory in the existing set.
        node_ids = self.graph.list_node_ids(MEMORY_LABEL)
        existing = {memory.id for memory in self.repository.list_all()}
        prefix = memory_node_id('')

        for node_id in node_ids:
            if node_id.startswith(prefix) and node_id[len(prefix):] not in existing:
                self.graph.delete_node(node_id)
                result.removed += 1
                logger.info(f'Removed orphan graph node {node_id}')

    def _sync_one(self, memory: Memory, result: SyncResult) -> None:
        current = self.repository.find(memory.id)
        if current is None:
            logger.debug(f'Memory {memory.id} vanished before sync, skipping')
            result.skipped += 1
            return

        try:
            extraction = self.extractor.extract(current.text)
            self._project(current, extraction)
        except StoreConnectivityError:
            raise
        except Exception as e:
            error = SyncItemError(current.id, str(e))
            logger.error(str(error))
            result.errors += 1
            self.repository.record_sync_outcome(current.id, current.revision, SyncState.FAILED, current.sync_retries + 1)
            return

        if self.repository.record_sync_outcome(current.id, current.revision, SyncState.SYNCED, 0):
            result.processed += 1
        else:
            # Deleted while it was being projected
            self.graph.delete_node(memory_node_id(current.id))
            result.skipped += 1

    def _project(self, memory: Memory, extraction: ExtractionResult) -> None:
        """Merge the memory vertex, its entities, relationships and tags, then prune stale edges."""
        node_id = memory_node_id(memory.id)
        self.graph.upsert_node(
            node_id, MEMORY_LABEL, {
                'memory_id': memory.id,
                'content': memory.text,
                'tags': ', '.join(memory.tags),
                'importance': memory.importance,
                'session_id': memory.session_id,
                'source': memory.source.value,
                'timestamp': to_iso(memory.timestamp),
                'revision': memory.revision
            })

        entity_ids = {}
        for entity in extraction.entities:
            label = sanitize_label(entity.label)
            entity_id = entity_node_id(label, entity.name)
            entity_ids[entity.id] = entity_id

            properties = {key: value for key, value in entity.properties.items() if key not in _RESERVED_PROPERTIES}
            properties['name'] = entity.name
            self.graph.upsert_node(entity_id, label, properties)
            self.graph.upsert_relationship(node_id, MENTIONS, entity_id)

        for relationship in extraction.relationships:
            self.graph.upsert_relationship(entity_ids[relationship.source_entity_id],
                                           sanitize_relationship_type(relationship.type),
                                           entity_ids[relationship.target_entity_id],
                                           relationship.properties)

        tag_ids = [tag_node_id(tag) for tag in memory.tags]
        for tag, tag_id in zip(memory.tags, tag_ids):
            self.graph.upsert_node(tag_id, TAG_LABEL, {'name': tag})
            self.graph.upsert_relationship(node_id, HAS_TAG, tag_id)

        self.graph.prune_relationships(node_id, HAS_TAG, tag_ids)
        self.graph.prune_relationships(node_id, MENTIONS, entity_ids.values())

    def stats(self) -> Dict[str, Any]:
        """Sync engine status for monitoring."""
        last_result = None
        if self.last_result is not None:
            last_result = asdict(self.last_result)
            for key in ('started_at', 'finished_at'):
                if last_result[key] is not None:
                    last_result[key] = to_iso(last_result[key])

        return {
            'running': self._run_lock.locked(),
            'total_runs': self.total_runs,
            'last_sync_time': to_iso(self.last_sync_time) if self.last_sync_time else None,
            'last_result': last_result,
            'last_error': self.last_error
        }


class SyncScheduler:
    """Runs the sync engine periodically on a daemon thread until stopped."""

    def __init__(self, engine: GraphSyncEngine, interval_seconds: float):
        self.engine = engine
        self.interval_seconds = interval_seconds

        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._full_resync_requested = False
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the scheduler thread. Does nothing if it is already running."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, daemon=True, name='graph-sync-scheduler')
        self._thread.start()
        logger.info(f'Graph sync scheduler started (interval={self.interval_seconds}s)')

    def trigger(self, full_resync: bool = False) -> None:
        """Wake the scheduler for an immediate run."""
        if full_resync:
            self._full_resync_requested = True
        self._wake_event.set()

    def stop(self, timeout: Optional[float] = 10.0) -> bool:
        """
        Stop the scheduler after the current run finishes.

        Returns:
            True if the thread has exited
        """
        self._stop_event.set()
        self._wake_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning('Graph sync scheduler did not stop within timeout')
                return False
            logger.info('Graph sync scheduler stopped')
        self._thread = None
        return True

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            full_resync = self._full_resync_requested
            self._full_resync_requested = False
            self._tick(full_resync)

            self._wake_event.wait(self.interval_seconds)
            self._wake_event.clear()

    def _tick(self, full_resync: bool) -> None:
        try:
            self.engine.run_sync(full_resync=full_resync)
        except StoreConnectivityError as e:
            logger.warning(f'Graph sync run failed, retrying next interval: {e}')
        except Exception:
            logger.exception('Graph sync scheduler tick failed')
