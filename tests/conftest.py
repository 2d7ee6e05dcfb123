"""Test fixtures: in-memory graph store and deterministic stand-ins for the Bedrock services."""

import re
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from recallgraph.models.core import (DisambiguationVerdict, EntityCandidate, ExtractedEntity, ExtractedMemory,
                                     ExtractedRelationship, Memory, PropertyUpdate)
from recallgraph.services.entity_store import EntityStore
from recallgraph.services.memory_management import MemoryManagementService
from recallgraph.services.memory_store import MemoryStore
from recallgraph.services.retrieval import RetrievalEngine
from recallgraph.utils.config import RetrievalConfig, load_config
from recallgraph.utils.local_graph import InMemoryGraphStore

STOP_WORDS = {
    'a', 'an', 'the', 'i', 'me', 'my', 'we', 'with', 'about', 'to', 'of', 'and', 'is', 'at', 'in', 'on', 'what', 'did',
    'do', 'who', 'had', 'for'
}


class VocabularyEmbedder:
    """Bag-of-words embedder: each new word gets its own dimension, so cosine similarity is word overlap."""

    def __init__(self, dimension: int = 256):
        self.dimension = dimension
        self.vocabulary: Dict[str, int] = {}
        self.calls: List[str] = []

    def _embed(self, text: str) -> List[float]:
        self.calls.append(text)
        vector = [0.0] * self.dimension
        for word in re.findall(r'[a-z0-9]+', text.lower()):
            if word in STOP_WORDS:
                continue
            index = self.vocabulary.setdefault(word, len(self.vocabulary) % self.dimension)
            vector[index] += 1.0
        return vector

    def embed_document(self, text: str) -> List[float]:
        return self._embed(text)

    def embed_query(self, text: str) -> List[float]:
        return self._embed(text)


def extraction(memory_type: str = 'episodic',
               summary: Optional[str] = None,
               entities: Sequence[Tuple[str, str]] = (),
               relationships: Sequence[Tuple[str, str, str]] = (),
               property_updates: Optional[Dict[str, Dict[str, str]]] = None,
               questions: Sequence[str] = ()) -> ExtractedMemory:
    return ExtractedMemory(summary=summary or 'summary',
                           type=memory_type,
                           entities=[ExtractedEntity(name=n, type=t) for n, t in entities],
                           relationships=[ExtractedRelationship(from_name=f, to_name=t, type=r) for f, t, r in relationships],
                           property_updates=[PropertyUpdate(entity_name=n, updates=u) for n, u in (property_updates or {}).items()],
                           hypothetical_questions=list(questions))


class ScriptedExtractor:
    """Returns the ExtractedMemory registered for a text, or a bare episodic memory."""

    def __init__(self):
        self.scripts: Dict[str, ExtractedMemory] = {}

    def script(self, text: str, extracted: ExtractedMemory) -> None:
        self.scripts[text] = extracted

    def extract(self, text: str) -> ExtractedMemory:
        if text in self.scripts:
            return self.scripts[text]
        return extraction(summary=text)


class ScriptedDisambiguator:
    """Returns a fixed verdict and records every call."""

    def __init__(self):
        self.verdict = DisambiguationVerdict(selected_index=-1, confidence='low', reasoning='unsure')
        self.todo_index = 0
        self.calls: List[Tuple[str, str, List[EntityCandidate]]] = []
        self.todo_calls: List[Tuple[str, List[Memory]]] = []

    def disambiguate(self, name, entity_type, context, candidates) -> DisambiguationVerdict:
        self.calls.append((name, entity_type, list(candidates)))
        return self.verdict

    def select_todo(self, query, todos) -> int:
        self.todo_calls.append((query, list(todos)))
        return self.todo_index


class ScriptedAnswerer:

    def __init__(self):
        self.used = [1]
        self.calls = []

    def synthesize(self, question, memories, entities):
        self.calls.append((question, list(memories), list(entities)))
        return f'answer to {question}', list(self.used)


@pytest.fixture
def retrieval_config() -> RetrievalConfig:
    return RetrievalConfig(neighbor_limit=5,
                           neighbor_weight=0.5,
                           shared_entity_cap=10,
                           fuzzy_min_score=0.3,
                           fuzzy_limit=10,
                           todo_search_limit=10)


@pytest.fixture
def graph() -> InMemoryGraphStore:
    return InMemoryGraphStore()


@pytest.fixture
def entity_store(graph, retrieval_config) -> EntityStore:
    return EntityStore(graph, retrieval_config)


@pytest.fixture
def memory_store(graph, entity_store) -> MemoryStore:
    return MemoryStore(graph, entity_store)


@pytest.fixture
def retrieval(graph, entity_store, retrieval_config) -> RetrievalEngine:
    return RetrievalEngine(graph, entity_store, retrieval_config)


@pytest.fixture
def embedder() -> VocabularyEmbedder:
    return VocabularyEmbedder()


@pytest.fixture
def extractor() -> ScriptedExtractor:
    return ScriptedExtractor()


@pytest.fixture
def disambiguator() -> ScriptedDisambiguator:
    return ScriptedDisambiguator()


@pytest.fixture
def answerer() -> ScriptedAnswerer:
    return ScriptedAnswerer()


@pytest.fixture
def service(graph, extractor, embedder, disambiguator, answerer, retrieval_config) -> MemoryManagementService:
    app_config = load_config()
    app_config.retrieval = retrieval_config
    return MemoryManagementService(store=graph,
                                   extractor=extractor,
                                   embedder=embedder,
                                   disambiguator=disambiguator,
                                   answerer=answerer,
                                   app_config=app_config)
