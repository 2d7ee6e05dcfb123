"""
Amazon Neptune graph store with Gremlin Python driver and AWS SigV4 authentication.

Graph layout:
    (:Memory)-[:MENTIONS]->(:Entity)
    (:Entity)-[:KNOWS|WORKS_AT|...]->(:Entity)
    (:HypotheticalQuestion)-[:FOR_MEMORY]->(:Memory)
    (:EntityVersion {entity_id, version})   append-only snapshot log

Embeddings and the entity name/alias text live in OpenSearch. Index writes made
inside a transaction are queued and applied only after the graph commit succeeds.
"""

import json
import threading
import time
from contextlib import contextmanager
from functools import wraps
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __
from gremlin_python.process.traversal import Cardinality, Order, P, T

from ..models.core import (Entity, EntityVersion, HypotheticalQuestion, Memory, MemoryMetadata, Relationship,
                           normalize_name)
from ..models.errors import RecallGraphError, UpstreamTransientError
from .config import NeptuneConfig
from .graph_store import GraphStore
from .logging_config import get_logger
from .opensearch_client import OpenSearchClient, OpenSearchError
from .timestamp_utils import from_iso, to_iso

logger = get_logger(__name__)

MENTIONS = 'MENTIONS'
FOR_MEMORY = 'FOR_MEMORY'


class NeptuneError(RecallGraphError):
    """Custom exception for Neptune errors."""
    pass


def _is_transient(error: Exception) -> bool:
    if 'cannot write to closing transport' in str(error).lower():
        return True
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True
    return (getattr(error, 'status_code', 0) or 0) >= 500


def retry_on_connection_error(func):
    """Decorator to retry Neptune operations once on connection errors.

    Inside a transaction the connection cannot be replaced, so the failure is surfaced immediately.
    """

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except RecallGraphError:
            raise
        except Exception as e:
            if not _is_transient(e):
                logger.error(f'Error in {func.__name__}: {e}')
                raise NeptuneError(f'Failed to {func.__name__}: {e}')
            if self.in_transaction():
                raise UpstreamTransientError('Neptune', f'{func.__name__} failed inside transaction: {e}')

            logger.warning(f'Connection error detected: {e}. Reconnecting...')
            self.close()
            time.sleep(self.config.retry_delay)
            self._connect()
            try:
                return func(self, *args, **kwargs)
            except RecallGraphError:
                raise
            except Exception as retry_e:
                logger.error(f'Error in {func.__name__}: {retry_e}')
                if _is_transient(retry_e):
                    raise UpstreamTransientError('Neptune', f'{func.__name__} failed after retry: {retry_e}')
                raise NeptuneError(f'Failed to {func.__name__}: {retry_e}')

    return wrapper


def _first(data: Dict, key: str, default: Any = None) -> Any:
    """Unwrap a value_map entry, which is a list for vertex properties and a scalar for edge properties."""
    value = data.get(key, default)
    if isinstance(value, list):
        return value[0] if value else default
    return value


class NeptuneGraphStore(GraphStore):
    """GraphStore over Amazon Neptune (graph) and OpenSearch (vector and fuzzy indexes)."""

    def __init__(self, config: NeptuneConfig, index: OpenSearchClient, create_indexes: bool = True):
        """
        Initialize Neptune client with Gremlin driver.

        Args:
            config: NeptuneConfig instance with connection parameters
            index: OpenSearch client holding embeddings and entity names
            create_indexes: Create missing OpenSearch indexes on startup
        """
        self.config = config
        self.index = index
        self.connection = None
        self.g = None
        self._local = threading.local()
        self._connect()

        if create_indexes:
            try:
                self.index.create_indexes()
            except OpenSearchError as e:
                logger.warning(f'Failed to create OpenSearch indexes: {e}')

        logger.info(f'Connected to Neptune at {config.endpoint}')

    def _connect(self):
        """Establish connection to Neptune."""
        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'

        credentials = Session().get_credentials()
        if credentials is None:
            raise NeptuneError('No AWS credentials found')
        creds = credentials.get_frozen_credentials()

        region = Session().region_name or self.config.region or 'us-east-1'

        # Create signed request for WebSocket connection
        request = AWSRequest(method='GET', url=conn_string, data=None)
        SigV4Auth(creds, 'neptune-db', region).add_auth(request)

        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=request.headers.items(),
                                                 transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))
        self.g = traversal().with_remote(self.connection)

    def close(self):
        """Close the Neptune connection."""
        if self.connection is not None:
            self.connection.close()

    # Transactions

    def in_transaction(self) -> bool:
        return getattr(self._local, 'depth', 0) > 0

    def _source(self):
        return getattr(self._local, 'gtx', None) or self.g

    def _after_commit(self, action: Callable[[], Any]) -> None:
        if self.in_transaction():
            self._local.pending.append(action)
        else:
            action()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        depth = getattr(self._local, 'depth', 0)
        if depth:
            self._local.depth = depth + 1
            try:
                yield
            finally:
                self._local.depth = depth
            return

        tx = self.g.tx()
        self._local.gtx = tx.begin()
        self._local.depth = 1
        self._local.pending = []
        try:
            yield
            tx.commit()
        except BaseException:
            if tx.is_open():
                tx.rollback()
            logger.debug('Rolled back Neptune transaction')
            raise
        finally:
            pending = self._local.pending
            self._local.gtx = None
            self._local.depth = 0
            self._local.pending = []

        for action in pending:
            action()

    # Conversions

    def _to_entity(self, data: Dict) -> Entity:
        return Entity(id=_first(data, 'id'),
                      name=_first(data, 'name', ''),
                      normalized_name=_first(data, 'normalized_name', ''),
                      type=_first(data, 'type', ''),
                      aliases=json.loads(_first(data, 'aliases', '[]')),
                      properties=json.loads(_first(data, 'properties', '{}')),
                      version=int(_first(data, 'version', 0)),
                      updated_at=from_iso(_first(data, 'updated_at')))

    def _to_memory(self, data: Dict) -> Memory:
        return Memory(id=_first(data, 'id'),
                      content=_first(data, 'content', ''),
                      summary=_first(data, 'summary', ''),
                      type=_first(data, 'type', ''),
                      timestamp=from_iso(_first(data, 'timestamp')),
                      metadata=MemoryMetadata(location=_first(data, 'location'),
                                              activity=_first(data, 'activity'),
                                              sentiment=_first(data, 'sentiment'),
                                              time_of_day=_first(data, 'time_of_day')),
                      status=_first(data, 'status'),
                      resolution_summary=_first(data, 'resolution_summary'),
                      resolved_at=from_iso(_first(data, 'resolved_at')))

    def _to_version(self, data: Dict) -> EntityVersion:
        return EntityVersion(id=_first(data, 'id'),
                             entity_id=_first(data, 'entity_id'),
                             version=int(_first(data, 'version', 0)),
                             name=_first(data, 'name', ''),
                             properties=json.loads(_first(data, 'properties', '{}')),
                             created_at=from_iso(_first(data, 'created_at')))

    def _to_relationship(self, row: Dict) -> Relationship:
        props = row.get('props', {})
        return Relationship(from_entity=row['from'],
                            to_entity=row['to'],
                            type=row['type'],
                            context=_first(props, 'context', ''),
                            first_seen=from_iso(_first(props, 'first_seen')),
                            last_seen=from_iso(_first(props, 'last_seen')))

    def _memories_by_id(self, memory_ids: List[str]) -> Dict[str, Memory]:
        if not memory_ids:
            return {}
        rows = self._source().V().has('Memory', 'id', P.within(list(set(memory_ids)))).value_map().to_list()
        return {m.id: m for m in (self._to_memory(row) for row in rows)}

    # Entities

    @retry_on_connection_error
    def get_entity(self, entity_id: str) -> Optional[Entity]:
        rows = self._source().V().has('Entity', 'id', entity_id).value_map().to_list()
        return self._to_entity(rows[0]) if rows else None

    @retry_on_connection_error
    def find_entity_by_key(self, normalized_name: str, entity_type: str) -> Optional[Entity]:
        rows = self._source().V().has('Entity', 'normalized_name', normalized_name)\
            .has('type', entity_type)\
            .limit(1)\
            .value_map().to_list()
        return self._to_entity(rows[0]) if rows else None

    @retry_on_connection_error
    def find_entities_by_name(self, normalized_name: str, entity_type: Optional[str] = None) -> List[Entity]:
        t = self._source().V().has_label('Entity')\
            .or_(__.has('normalized_name', normalized_name), __.has('alias_key', normalized_name))
        if entity_type:
            t = t.has('type', entity_type)
        return [self._to_entity(row) for row in t.value_map().to_list()]

    def _write_alias_keys(self, t, entity: Entity):
        keys = {normalize_name(a) for a in entity.aliases}
        for key in sorted(keys):
            t = t.property(Cardinality.set_, 'alias_key', key)
        return t

    @retry_on_connection_error
    def create_entity(self, entity: Entity) -> None:
        t = self._source().add_v('Entity').property('id', entity.id)\
            .property('name', entity.name)\
            .property('normalized_name', entity.normalized_name)\
            .property('type', entity.type)\
            .property('aliases', json.dumps(entity.aliases))\
            .property('properties', json.dumps(entity.properties))\
            .property('version', entity.version)
        if entity.updated_at:
            t = t.property('updated_at', to_iso(entity.updated_at))
        self._write_alias_keys(t, entity).iterate()

        logger.debug(f'Created entity vertex: {entity.id}')
        self._after_commit(lambda: self.index.index_entity(entity))

    @retry_on_connection_error
    def save_entity(self, entity: Entity) -> None:
        g = self._source()
        g.V().has('Entity', 'id', entity.id).properties('alias_key').drop().iterate()

        t = g.V().has('Entity', 'id', entity.id)\
            .property(Cardinality.single, 'name', entity.name)\
            .property(Cardinality.single, 'aliases', json.dumps(entity.aliases))\
            .property(Cardinality.single, 'properties', json.dumps(entity.properties))\
            .property(Cardinality.single, 'version', entity.version)
        if entity.updated_at:
            t = t.property(Cardinality.single, 'updated_at', to_iso(entity.updated_at))
        self._write_alias_keys(t, entity).iterate()

        logger.debug(f'Saved entity vertex: {entity.id} (version {entity.version})')
        self._after_commit(lambda: self.index.index_entity(entity))

    @retry_on_connection_error
    def delete_entity(self, entity_id: str) -> None:
        # Dropping a vertex drops its incident edges
        self._source().V().has('Entity', 'id', entity_id).drop().iterate()
        logger.debug(f'Deleted entity vertex: {entity_id}')
        self._after_commit(lambda: self.index.delete_entity(entity_id))

    @retry_on_connection_error
    def list_entities(self) -> List[Entity]:
        return [self._to_entity(row) for row in self._source().V().has_label('Entity').value_map().to_list()]

    @retry_on_connection_error
    def mention_count(self, entity_id: str) -> int:
        return int(self._source().V().has('Entity', 'id', entity_id).in_(MENTIONS).dedup().count().next())

    # Version log

    @retry_on_connection_error
    def append_version(self, version: EntityVersion) -> None:
        self._source().add_v('EntityVersion').property('id', version.id)\
            .property('entity_id', version.entity_id)\
            .property('version', version.version)\
            .property('name', version.name)\
            .property('properties', json.dumps(version.properties))\
            .property('created_at', to_iso(version.created_at))\
            .iterate()

    @retry_on_connection_error
    def list_versions(self, entity_id: str, limit: int) -> List[EntityVersion]:
        if limit <= 0:
            return []
        rows = self._source().V().has('EntityVersion', 'entity_id', entity_id)\
            .order().by('version', Order.desc)\
            .limit(limit)\
            .value_map().to_list()
        return [self._to_version(row) for row in rows]

    # Memories

    @retry_on_connection_error
    def create_memory(self, memory: Memory) -> None:
        t = self._source().add_v('Memory').property('id', memory.id)\
            .property('content', memory.content)\
            .property('summary', memory.summary)\
            .property('type', memory.type)\
            .property('timestamp', to_iso(memory.timestamp))

        optional = dict(memory.metadata.to_dict())
        optional.update({
            'status': memory.status,
            'resolution_summary': memory.resolution_summary,
            'resolved_at': to_iso(memory.resolved_at)
        })
        for key, value in optional.items():
            if value is not None:
                t = t.property(key, value)
        t.iterate()

        logger.debug(f'Created memory vertex: {memory.id}')
        self._after_commit(lambda: self.index.index_memory(memory))

    @retry_on_connection_error
    def get_memory(self, memory_id: str) -> Optional[Memory]:
        rows = self._source().V().has('Memory', 'id', memory_id).value_map().to_list()
        return self._to_memory(rows[0]) if rows else None

    @retry_on_connection_error
    def save_memory(self, memory: Memory) -> None:
        t = self._source().V().has('Memory', 'id', memory.id)
        for key, value in (('status', memory.status), ('resolution_summary', memory.resolution_summary),
                           ('resolved_at', to_iso(memory.resolved_at))):
            if value is not None:
                t = t.property(Cardinality.single, key, value)
        t.iterate()

    @retry_on_connection_error
    def recent_memories(self, limit: int) -> List[Memory]:
        rows = self._source().V().has_label('Memory')\
            .order().by('timestamp', Order.desc)\
            .limit(max(0, limit))\
            .value_map().to_list()
        return [self._to_memory(row) for row in rows]

    @retry_on_connection_error
    def all_memories(self) -> List[Memory]:
        rows = self._source().V().has_label('Memory').order().by('timestamp', Order.asc).value_map().to_list()
        return [self._to_memory(row) for row in rows]

    # Edges

    @retry_on_connection_error
    def add_mention(self, memory_id: str, entity_id: str) -> None:
        g = self._source()
        existing = g.V().has('Memory', 'id', memory_id)\
            .out_e(MENTIONS).where(__.in_v().has('id', entity_id))\
            .count().next()
        if existing:
            return
        g.V().has('Memory', 'id', memory_id).add_e(MENTIONS).to(__.V().has('Entity', 'id', entity_id)).iterate()

    @retry_on_connection_error
    def mentioning_memory_ids(self, entity_id: str) -> List[str]:
        return self._source().V().has('Entity', 'id', entity_id).in_(MENTIONS).values('id').to_list()

    @retry_on_connection_error
    def remove_mention(self, memory_id: str, entity_id: str) -> None:
        self._source().V().has('Memory', 'id', memory_id)\
            .out_e(MENTIONS).where(__.in_v().has('id', entity_id))\
            .drop().iterate()

    @retry_on_connection_error
    def entities_for_memories(self, memory_ids: Iterable[str]) -> List[Entity]:
        ids = list(memory_ids)
        if not ids:
            return []
        rows = self._source().V().has('Memory', 'id', P.within(ids)).out(MENTIONS).dedup().value_map().to_list()
        return [self._to_entity(row) for row in rows]

    def _relationship_rows(self, t) -> List[Relationship]:
        rows = t.project('type', 'from', 'to', 'props')\
            .by(T.label)\
            .by(__.out_v().values('id'))\
            .by(__.in_v().values('id'))\
            .by(__.value_map())\
            .to_list()
        return [self._to_relationship(row) for row in rows]

    @retry_on_connection_error
    def get_relationship(self, from_id: str, to_id: str, rel_type: str) -> Optional[Relationship]:
        rels = self._relationship_rows(self._source().V().has('Entity', 'id', from_id)
                                       .out_e(rel_type).where(__.in_v().has('id', to_id)).limit(1))
        return rels[0] if rels else None

    @retry_on_connection_error
    def save_relationship(self, relationship: Relationship) -> None:
        g = self._source()
        edge = g.V().has('Entity', 'id', relationship.from_entity)\
            .out_e(relationship.type).where(__.in_v().has('id', relationship.to_entity))
        if not edge.count().next():
            edge = g.V().has('Entity', 'id', relationship.from_entity)\
                .add_e(relationship.type).to(__.V().has('Entity', 'id', relationship.to_entity))
        else:
            edge = g.V().has('Entity', 'id', relationship.from_entity)\
                .out_e(relationship.type).where(__.in_v().has('id', relationship.to_entity))

        edge.property('context', relationship.context or '')\
            .property('first_seen', to_iso(relationship.first_seen))\
            .property('last_seen', to_iso(relationship.last_seen))\
            .iterate()

    @retry_on_connection_error
    def delete_relationship(self, from_id: str, to_id: str, rel_type: str) -> None:
        self._source().V().has('Entity', 'id', from_id)\
            .out_e(rel_type).where(__.in_v().has('id', to_id))\
            .drop().iterate()

    @retry_on_connection_error
    def relationships_of(self, entity_id: str) -> List[Relationship]:
        return self._relationship_rows(self._source().V().has('Entity', 'id', entity_id)
                                       .both_e().not_(__.has_label(MENTIONS)).dedup())

    # Hypothetical questions

    @retry_on_connection_error
    def add_question(self, question: HypotheticalQuestion) -> None:
        self._source().add_v('HypotheticalQuestion').property('id', question.id)\
            .property('question', question.question)\
            .add_e(FOR_MEMORY).to(__.V().has('Memory', 'id', question.memory_id))\
            .iterate()
        self._after_commit(lambda: self.index.index_question(question))

    # Indexes

    def _resolve_memory_hits(self, hits: List[Tuple[str, float]]) -> List[Tuple[Memory, float]]:
        memories = self._memories_by_id([memory_id for memory_id, _ in hits])
        return [(memories[memory_id], score) for memory_id, score in hits if memory_id in memories]

    @retry_on_connection_error
    def vector_search_memories(self, embedding: List[float], k: int) -> List[Tuple[Memory, float]]:
        return self._resolve_memory_hits(self.index.vector_search('memory', embedding, k))

    @retry_on_connection_error
    def vector_search_questions(self, embedding: List[float], k: int) -> List[Tuple[Memory, float]]:
        return self._resolve_memory_hits(self.index.vector_search('question', embedding, k))

    @retry_on_connection_error
    def fuzzy_search_entities(self, term: str, entity_type: Optional[str], limit: int) -> List[Tuple[Entity, float]]:
        hits = self.index.fuzzy_search_entities(term, entity_type, limit)
        if not hits:
            return []
        rows = self._source().V().has('Entity', 'id', P.within([entity_id for entity_id, _ in hits])).value_map().to_list()
        entities = {e.id: e for e in (self._to_entity(row) for row in rows)}
        # The text index may briefly lag behind merges and deletions
        return [(entities[entity_id], score) for entity_id, score in hits if entity_id in entities]

    # Graph expansion

    @retry_on_connection_error
    def related_memories(self, memory_id: str, limit: int) -> List[Tuple[Memory, int]]:
        counts = self._source().V().has('Memory', 'id', memory_id)\
            .out(MENTIONS).dedup()\
            .in_(MENTIONS).has('id', P.neq(memory_id))\
            .group_count().by('id')\
            .next()
        ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)[:max(0, limit)]
        memories = self._memories_by_id([memory_id for memory_id, _ in ranked])
        return [(memories[m], int(count)) for m, count in ranked if m in memories]

    @retry_on_connection_error
    def health_check(self) -> bool:
        """
        Perform a health check on the Neptune and OpenSearch services.

        Returns:
            True if both services respond
        """
        self.g.V().limit(1).count().next()
        return self.index.health_check()
