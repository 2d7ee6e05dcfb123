"""
Persistence substrate interface.

EntityStore, MemoryStore and RetrievalEngine depend only on GraphStore, so any
transactional graph backend with a vector index and a fuzzy text index can be
plugged in. Every method participates in the transaction opened by
transaction() when one is active on the calling thread.
"""

from abc import ABC, abstractmethod
from typing import ContextManager, Iterable, List, Optional, Tuple

from ..models.core import Entity, EntityVersion, HypotheticalQuestion, Memory, Relationship
from .config import AppConfig


class GraphStore(ABC):
    """Transactional graph store with vector and fuzzy indexes."""

    @abstractmethod
    def transaction(self) -> ContextManager[None]:
        """Open a transaction; nested calls join the outermost one. Rolls back on exception."""

    # Entities

    @abstractmethod
    def get_entity(self, entity_id: str) -> Optional[Entity]:
        pass

    @abstractmethod
    def find_entity_by_key(self, normalized_name: str, entity_type: str) -> Optional[Entity]:
        """Look up the live entity for the (normalized_name, type) natural key."""

    @abstractmethod
    def find_entities_by_name(self, normalized_name: str, entity_type: Optional[str] = None) -> List[Entity]:
        """Entities whose normalized name or any normalized alias equals normalized_name."""

    @abstractmethod
    def create_entity(self, entity: Entity) -> None:
        pass

    @abstractmethod
    def save_entity(self, entity: Entity) -> None:
        """Overwrite name, aliases, properties, version and updated_at of an existing entity."""

    @abstractmethod
    def delete_entity(self, entity_id: str) -> None:
        """Remove the entity and every edge touching it."""

    @abstractmethod
    def list_entities(self) -> List[Entity]:
        pass

    @abstractmethod
    def mention_count(self, entity_id: str) -> int:
        """Number of distinct memories mentioning the entity."""

    # Version log

    @abstractmethod
    def append_version(self, version: EntityVersion) -> None:
        pass

    @abstractmethod
    def list_versions(self, entity_id: str, limit: int) -> List[EntityVersion]:
        """Snapshots newest-first, at most limit."""

    # Memories

    @abstractmethod
    def create_memory(self, memory: Memory) -> None:
        pass

    @abstractmethod
    def get_memory(self, memory_id: str) -> Optional[Memory]:
        pass

    @abstractmethod
    def save_memory(self, memory: Memory) -> None:
        """Persist the mutable todo fields (status, resolution_summary, resolved_at)."""

    @abstractmethod
    def recent_memories(self, limit: int) -> List[Memory]:
        """Most recently created memories first."""

    @abstractmethod
    def all_memories(self) -> List[Memory]:
        """All memories, oldest first."""

    # Edges

    @abstractmethod
    def add_mention(self, memory_id: str, entity_id: str) -> None:
        """Create a MENTIONS edge unless the pair is already linked."""

    @abstractmethod
    def mentioning_memory_ids(self, entity_id: str) -> List[str]:
        pass

    @abstractmethod
    def remove_mention(self, memory_id: str, entity_id: str) -> None:
        pass

    @abstractmethod
    def entities_for_memories(self, memory_ids: Iterable[str]) -> List[Entity]:
        """Distinct entities mentioned by any of the memories."""

    @abstractmethod
    def get_relationship(self, from_id: str, to_id: str, rel_type: str) -> Optional[Relationship]:
        pass

    @abstractmethod
    def save_relationship(self, relationship: Relationship) -> None:
        """Create the edge or overwrite the properties of the existing (from, to, type) edge."""

    @abstractmethod
    def delete_relationship(self, from_id: str, to_id: str, rel_type: str) -> None:
        pass

    @abstractmethod
    def relationships_of(self, entity_id: str) -> List[Relationship]:
        """Typed relationship edges in either direction, MENTIONS excluded."""

    # Hypothetical questions

    @abstractmethod
    def add_question(self, question: HypotheticalQuestion) -> None:
        pass

    # Indexes

    @abstractmethod
    def vector_search_memories(self, embedding: List[float], k: int) -> List[Tuple[Memory, float]]:
        """Top-k memories by embedding similarity. Raises IndexUnavailableError if the index is absent."""

    @abstractmethod
    def vector_search_questions(self, embedding: List[float], k: int) -> List[Tuple[Memory, float]]:
        """Top-k hypothetical questions resolved to their parent memory. Raises IndexUnavailableError."""

    @abstractmethod
    def fuzzy_search_entities(self, term: str, entity_type: Optional[str], limit: int) -> List[Tuple[Entity, float]]:
        """Token-level fuzzy match over names and aliases, scores in (0, 1). Raises IndexUnavailableError."""

    # Graph expansion

    @abstractmethod
    def related_memories(self, memory_id: str, limit: int) -> List[Tuple[Memory, int]]:
        """Other memories sharing at least one mentioned entity, by shared-entity count descending."""

    @abstractmethod
    def health_check(self) -> bool:
        pass

    def close(self) -> None:
        pass


def create_graph_store(config: AppConfig) -> GraphStore:
    """Build the substrate selected by STORE_BACKEND."""
    backend = config.store.backend
    if backend == 'memory':
        from .local_graph import InMemoryGraphStore
        return InMemoryGraphStore()
    if backend == 'neptune':
        from .neptune_client import NeptuneGraphStore
        from .opensearch_client import OpenSearchClient
        return NeptuneGraphStore(config.neptune, OpenSearchClient(config.opensearch))
    raise ValueError(f'Unknown store backend: {backend}')
