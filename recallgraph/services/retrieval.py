"""
Vector and graph-expanded retrieval over stored memories.
"""

from collections import OrderedDict
from typing import Dict, List, Optional, Sequence

from ..models.core import EntityCandidate, Memory, ScoredMemory
from ..models.errors import IndexUnavailableError
from ..utils.config import RetrievalConfig, config
from ..utils.graph_store import GraphStore
from ..utils.logging_config import get_logger
from .entity_store import EntityStore

logger = get_logger(__name__)


def _ranked(scored: Dict[str, ScoredMemory], k: int) -> List[ScoredMemory]:
    # sorted() is stable, so ties keep insertion order
    return sorted(scored.values(), key=lambda s: s.score, reverse=True)[:k]


class RetrievalEngine:
    """Rank memories for a query embedding."""

    def __init__(self, store: GraphStore, entities: EntityStore, retrieval_config: Optional[RetrievalConfig] = None):
        self.store = store
        self.entities = entities
        self.config = retrieval_config or config.retrieval

    def vector_search(self, embedding: List[float], k: int) -> List[ScoredMemory]:
        """Top-k memories by similarity of their own or their hypothetical questions' embeddings.

        A memory matched through both keeps the higher score. If neither index returns
        anything, the k most recent memories are returned with score 0.0.
        """
        if k <= 0:
            return []

        scored: Dict[str, ScoredMemory] = OrderedDict()
        for search in (self.store.vector_search_memories, self.store.vector_search_questions):
            try:
                hits = search(embedding, k)
            except IndexUnavailableError as e:
                logger.warning(f'Vector index unavailable, skipping: {e}')
                continue

            for memory, score in hits:
                current = scored.get(memory.id)
                if current is None:
                    scored[memory.id] = ScoredMemory(memory=memory, score=score)
                elif score > current.score:
                    current.score = score

        if not scored:
            logger.debug('No vector matches, falling back to recent memories')
            return [ScoredMemory(memory=m, score=0.0) for m in self.store.recent_memories(k)]

        return _ranked(scored, k)

    def hybrid_search(self, embedding: List[float], k: int) -> List[ScoredMemory]:
        """Vector search expanded through shared entities.

        Seeds are scored by rank (1 - i/n). Each seed adds up to neighbor_limit memories that
        mention the same entities, scored min(1, shared/shared_entity_cap) * neighbor_weight.
        A memory that is a seed keeps its seed score; a neighbor reached from several seeds
        keeps its best score.
        """
        seeds = self.vector_search(embedding, k)
        if not seeds:
            return []

        scored: Dict[str, ScoredMemory] = OrderedDict()
        for i, seed in enumerate(seeds):
            scored[seed.memory.id] = ScoredMemory(memory=seed.memory, score=1 - i / len(seeds))
        seed_ids = set(scored)

        for seed in seeds:
            for memory, shared in self.store.related_memories(seed.memory.id, self.config.neighbor_limit):
                if memory.id in seed_ids:
                    continue
                score = min(1.0, shared / self.config.shared_entity_cap) * self.config.neighbor_weight
                current = scored.get(memory.id)
                if current is None:
                    scored[memory.id] = ScoredMemory(memory=memory, score=score)
                elif score > current.score:
                    current.score = score

        logger.debug(f'Hybrid search: {len(seeds)} seeds, {len(scored) - len(seeds)} neighbors')
        return _ranked(scored, k)

    def find_similar_entities(self, name: str, entity_type: Optional[str] = None) -> List[EntityCandidate]:
        return self.entities.resolve(name, entity_type)

    def entity_context(self, memories: Sequence[Memory]) -> List[EntityCandidate]:
        """Entities mentioned by the given memories, with their overall mention counts."""
        entities = self.store.entities_for_memories([m.id for m in memories])
        return [EntityCandidate(entity=e, score=1.0, memory_count=self.store.mention_count(e.id)) for e in entities]
