"""
In-process graph store for local runs and tests.

Holds the whole graph in dictionaries guarded by a re-entrant lock. Transactions
snapshot the state on entry and restore it if the block raises. Vector search is
brute-force cosine similarity; fuzzy search compares name and alias tokens by
edit distance.
"""

import copy
import math
import threading
from collections import OrderedDict
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from ..models.core import Entity, EntityVersion, HypotheticalQuestion, Memory, Relationship, normalize_name
from ..models.errors import IndexUnavailableError
from .graph_store import GraphStore
from .logging_config import get_logger
from .text_similarity import levenshtein_distance, max_edits

logger = get_logger(__name__)

FUZZY_SCORE_CEILING = 0.9
ALL_INDEXES = ('memory', 'question', 'entity')


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class InMemoryGraphStore(GraphStore):
    """Dictionary-backed GraphStore with snapshot transactions."""

    def __init__(self, indexes: Iterable[str] = ALL_INDEXES):
        """
        Args:
            indexes: Which of 'memory', 'question' and 'entity' indexes exist. Searching a missing one
                raises IndexUnavailableError, as a backend whose index has not been built would.
        """
        self.indexes = set(indexes)
        self._lock = threading.RLock()
        self._local = threading.local()
        self._entities: Dict[str, Entity] = OrderedDict()
        self._versions: Dict[str, List[EntityVersion]] = {}
        self._memories: Dict[str, Memory] = OrderedDict()
        self._mentions: List[Tuple[str, str]] = []
        self._relationships: Dict[Tuple[str, str, str], Relationship] = OrderedDict()
        self._questions: Dict[str, HypotheticalQuestion] = OrderedDict()

    _STATE = ('_entities', '_versions', '_memories', '_mentions', '_relationships', '_questions')

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            depth = getattr(self._local, 'depth', 0)
            if depth:
                self._local.depth = depth + 1
                try:
                    yield
                finally:
                    self._local.depth = depth
                return

            snapshot = {name: copy.deepcopy(getattr(self, name)) for name in self._STATE}
            self._local.depth = 1
            try:
                yield
            except BaseException:
                for name, value in snapshot.items():
                    setattr(self, name, value)
                logger.debug('Rolled back in-memory transaction')
                raise
            finally:
                self._local.depth = 0

    # Entities

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        with self._lock:
            entity = self._entities.get(entity_id)
            return copy.deepcopy(entity) if entity else None

    def find_entity_by_key(self, normalized_name: str, entity_type: str) -> Optional[Entity]:
        with self._lock:
            for entity in self._entities.values():
                if entity.normalized_name == normalized_name and entity.type == entity_type:
                    return copy.deepcopy(entity)
            return None

    def find_entities_by_name(self, normalized_name: str, entity_type: Optional[str] = None) -> List[Entity]:
        with self._lock:
            matches = []
            for entity in self._entities.values():
                if entity_type and entity.type != entity_type:
                    continue
                names = [entity.normalized_name] + [normalize_name(a) for a in entity.aliases]
                if normalized_name in names:
                    matches.append(copy.deepcopy(entity))
            return matches

    def create_entity(self, entity: Entity) -> None:
        with self._lock:
            self._entities[entity.id] = copy.deepcopy(entity)

    def save_entity(self, entity: Entity) -> None:
        with self._lock:
            if entity.id in self._entities:
                self._entities[entity.id] = copy.deepcopy(entity)

    def delete_entity(self, entity_id: str) -> None:
        with self._lock:
            self._entities.pop(entity_id, None)
            self._mentions = [(m, e) for m, e in self._mentions if e != entity_id]
            self._relationships = OrderedDict(
                (key, rel) for key, rel in self._relationships.items() if entity_id not in (key[0], key[1]))

    def list_entities(self) -> List[Entity]:
        with self._lock:
            return [copy.deepcopy(e) for e in self._entities.values()]

    def mention_count(self, entity_id: str) -> int:
        with self._lock:
            return len({m for m, e in self._mentions if e == entity_id})

    # Version log

    def append_version(self, version: EntityVersion) -> None:
        with self._lock:
            self._versions.setdefault(version.entity_id, []).append(copy.deepcopy(version))

    def list_versions(self, entity_id: str, limit: int) -> List[EntityVersion]:
        with self._lock:
            versions = sorted(self._versions.get(entity_id, []), key=lambda v: v.version, reverse=True)
            return [copy.deepcopy(v) for v in versions[:max(0, limit)]]

    # Memories

    def create_memory(self, memory: Memory) -> None:
        with self._lock:
            self._memories[memory.id] = copy.deepcopy(memory)

    def get_memory(self, memory_id: str) -> Optional[Memory]:
        with self._lock:
            memory = self._memories.get(memory_id)
            return copy.deepcopy(memory) if memory else None

    def save_memory(self, memory: Memory) -> None:
        with self._lock:
            stored = self._memories.get(memory.id)
            if stored is not None:
                stored.status = memory.status
                stored.resolution_summary = memory.resolution_summary
                stored.resolved_at = memory.resolved_at

    def recent_memories(self, limit: int) -> List[Memory]:
        with self._lock:
            newest_first = list(reversed(list(self._memories.values())))
            newest_first.sort(key=lambda m: m.timestamp, reverse=True)
            return [copy.deepcopy(m) for m in newest_first[:max(0, limit)]]

    def all_memories(self) -> List[Memory]:
        with self._lock:
            return [copy.deepcopy(m) for m in sorted(self._memories.values(), key=lambda m: m.timestamp)]

    # Edges

    def add_mention(self, memory_id: str, entity_id: str) -> None:
        with self._lock:
            if (memory_id, entity_id) not in self._mentions:
                self._mentions.append((memory_id, entity_id))

    def mentioning_memory_ids(self, entity_id: str) -> List[str]:
        with self._lock:
            return [m for m, e in self._mentions if e == entity_id]

    def remove_mention(self, memory_id: str, entity_id: str) -> None:
        with self._lock:
            self._mentions = [pair for pair in self._mentions if pair != (memory_id, entity_id)]

    def entities_for_memories(self, memory_ids: Iterable[str]) -> List[Entity]:
        with self._lock:
            wanted = set(memory_ids)
            seen = OrderedDict()
            for memory_id, entity_id in self._mentions:
                if memory_id in wanted and entity_id in self._entities:
                    seen.setdefault(entity_id, self._entities[entity_id])
            return [copy.deepcopy(e) for e in seen.values()]

    def get_relationship(self, from_id: str, to_id: str, rel_type: str) -> Optional[Relationship]:
        with self._lock:
            rel = self._relationships.get((from_id, to_id, rel_type))
            return copy.deepcopy(rel) if rel else None

    def save_relationship(self, relationship: Relationship) -> None:
        with self._lock:
            key = (relationship.from_entity, relationship.to_entity, relationship.type)
            self._relationships[key] = copy.deepcopy(relationship)

    def delete_relationship(self, from_id: str, to_id: str, rel_type: str) -> None:
        with self._lock:
            self._relationships.pop((from_id, to_id, rel_type), None)

    def relationships_of(self, entity_id: str) -> List[Relationship]:
        with self._lock:
            return [
                copy.deepcopy(rel) for key, rel in self._relationships.items() if entity_id in (key[0], key[1])
            ]

    # Hypothetical questions

    def add_question(self, question: HypotheticalQuestion) -> None:
        with self._lock:
            self._questions[question.id] = copy.deepcopy(question)

    # Indexes

    def _require_index(self, name: str) -> None:
        if name not in self.indexes:
            raise IndexUnavailableError(f'{name}_index')

    def vector_search_memories(self, embedding: List[float], k: int) -> List[Tuple[Memory, float]]:
        self._require_index('memory')
        with self._lock:
            scored = [(m, cosine_similarity(embedding, m.embedding)) for m in self._memories.values() if m.embedding]
            scored.sort(key=lambda item: item[1], reverse=True)
            return [(copy.deepcopy(m), score) for m, score in scored[:max(0, k)]]

    def vector_search_questions(self, embedding: List[float], k: int) -> List[Tuple[Memory, float]]:
        self._require_index('question')
        with self._lock:
            scored = [(q, cosine_similarity(embedding, q.embedding)) for q in self._questions.values()
                      if q.memory_id in self._memories]
            scored.sort(key=lambda item: item[1], reverse=True)
            return [(copy.deepcopy(self._memories[q.memory_id]), score) for q, score in scored[:max(0, k)]]

    def fuzzy_search_entities(self, term: str, entity_type: Optional[str], limit: int) -> List[Tuple[Entity, float]]:
        self._require_index('entity')
        term = normalize_name(term)
        budget = max_edits(term)
        with self._lock:
            hits = []
            for entity in self._entities.values():
                if entity_type and entity.type != entity_type:
                    continue
                tokens = entity.normalized_name.split()
                for alias in entity.aliases:
                    tokens.extend(normalize_name(alias).split())

                best = 0.0
                for token in tokens:
                    distance = levenshtein_distance(term, token)
                    if distance <= budget:
                        best = max(best, FUZZY_SCORE_CEILING * (1 - distance / max(len(term), len(token))))
                if best > 0:
                    hits.append((entity, best))

            hits.sort(key=lambda item: item[1], reverse=True)
            return [(copy.deepcopy(e), score) for e, score in hits[:max(0, limit)]]

    # Graph expansion

    def related_memories(self, memory_id: str, limit: int) -> List[Tuple[Memory, int]]:
        with self._lock:
            entity_ids = {e for m, e in self._mentions if m == memory_id}
            shared: Dict[str, set] = OrderedDict()
            for other_id, entity_id in self._mentions:
                if other_id != memory_id and entity_id in entity_ids and other_id in self._memories:
                    shared.setdefault(other_id, set()).add(entity_id)

            ranked = sorted(shared.items(), key=lambda item: len(item[1]), reverse=True)
            return [(copy.deepcopy(self._memories[m]), len(es)) for m, es in ranked[:max(0, limit)]]

    def health_check(self) -> bool:
        return True
