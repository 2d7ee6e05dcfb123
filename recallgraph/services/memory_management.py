"""
Memory Management Service: remember, recall, answer and curate the knowledge graph.
"""

import json
from typing import Dict, List, Optional, Tuple

from ..models.core import (Entity, EntityCandidate, EntityDetails, EntityRef, EntityVersion, Memory, MergeCandidate,
                           NewEntity, PreparedMemory, Resolved, new_id, normalize_name)
from ..models.errors import AmbiguousResolutionError, NotFoundError, RecallGraphError, ValidationError
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import AppConfig, config
from ..utils.graph_store import GraphStore, create_graph_store
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_iso, utc_now
from .answer_synthesis import AnswerSynthesisService
from .disambiguation import DisambiguationService
from .entity_extraction import EntityExtractionService
from .entity_store import EntityStore
from .memory_store import MemoryStore
from .retrieval import RetrievalEngine

logger = get_logger(__name__)

EXPORT_FORMAT_VERSION = '2.0'


class MemoryManagementError(RecallGraphError):
    """Custom exception for memory management errors."""
    pass


class MemoryManagementService:
    """Unified service for memory operations: storing, retrieval, answering and entity curation."""

    def __init__(self,
                 store: Optional[GraphStore] = None,
                 extractor=None,
                 embedder=None,
                 disambiguator=None,
                 answerer=None,
                 app_config: Optional[AppConfig] = None):
        """Initialize the memory management service.

        Every collaborator defaults to the Bedrock-backed implementation built from the
        global configuration.

        Args:
            store: Persistence substrate
            extractor: Object with extract(text) -> ExtractedMemory
            embedder: Object with embed_document(text) and embed_query(text)
            disambiguator: Object with disambiguate(...) and select_todo(...)
            answerer: Object with synthesize(question, memories, entities)
            app_config: Application configuration
        """
        self.config = app_config or config
        self.store = store or create_graph_store(self.config)

        llm = None
        if extractor is None or disambiguator is None or answerer is None:
            llm = BedrockLLM(self.config.bedrock_llm)
        self.extractor = extractor or EntityExtractionService(llm)
        self.disambiguator = disambiguator or DisambiguationService(llm)
        self.answerer = answerer or AnswerSynthesisService(llm)
        self.embedder = embedder or BedrockEmbed(self.config.bedrock_embed)

        self.entities = EntityStore(self.store, self.config.retrieval)
        self.memories = MemoryStore(self.store, self.entities)
        self.retrieval = RetrievalEngine(self.store, self.entities, self.config.retrieval)

        logger.info('Initialized MemoryManagementService')

    # Storing

    def prepare_memory(self, text: str) -> PreparedMemory:
        """Run extraction, embedding and entity resolution without writing anything.

        Args:
            text: Note to remember

        Returns:
            PreparedMemory; entities the disambiguator could not settle are left Ambiguous
        """
        if not text or not text.strip():
            raise ValidationError('Cannot remember empty text')

        extracted = self.extractor.extract(text)
        embedding = self.embedder.embed_document(text)

        resolutions = []
        for entity in extracted.entities:
            candidates = self.entities.resolve(entity.name, entity.type)
            resolution = self.entities.disambiguate(entity.name, entity.type, text, candidates, self.disambiguator)
            resolutions.append((entity, resolution))

        questions = [(q, self.embedder.embed_document(q)) for q in extracted.hypothetical_questions]

        return PreparedMemory(text=text,
                              extracted=extracted,
                              embedding=embedding,
                              resolutions=resolutions,
                              questions=questions)

    def store_prepared(self, prepared: PreparedMemory, resolutions: Optional[Dict[str, Optional[str]]] = None) -> str:
        """Write a prepared memory.

        Args:
            prepared: Output of prepare_memory
            resolutions: Entity name to the entity id it refers to, or None to force a new entity.
                Overrides the automatic resolution.

        Returns:
            The new memory id

        Raises:
            AmbiguousResolutionError: An entity is still ambiguous; nothing has been written
            NotFoundError: A manual resolution names an unknown entity; nothing has been written
        """
        manual = {normalize_name(name): entity_id for name, entity_id in (resolutions or {}).items()}

        refs = []
        for entity, resolution in prepared.resolutions:
            key = normalize_name(entity.name)
            if key in manual:
                resolved_id = manual[key]
            elif isinstance(resolution, Resolved):
                resolved_id = resolution.entity_id
            elif isinstance(resolution, NewEntity):
                resolved_id = None
            else:
                raise AmbiguousResolutionError(entity.name, entity.type, resolution.candidates)
            refs.append(EntityRef(name=entity.name, type=entity.type, context=entity.context, resolved_id=resolved_id))

        extracted = prepared.extracted
        memory = Memory(id=new_id(),
                        content=prepared.text,
                        summary=extracted.summary,
                        type=extracted.type,
                        timestamp=utc_now(),
                        embedding=prepared.embedding,
                        metadata=extracted.metadata,
                        status='open' if extracted.type == 'todo' else None)

        with self.store.transaction():
            memory_id, resolution_map = self.memories.store_memory(memory, refs, extracted.relationships, prepared.questions)

            for update in extracted.property_updates:
                entity_id = resolution_map.get(normalize_name(update.entity_name))
                if entity_id is None:
                    logger.warning(f"Skipping property update for '{update.entity_name}': not mentioned in this memory")
                    continue
                self.entities.update_properties(entity_id, update.updates)

        return memory_id

    def remember(self, text: str, resolutions: Optional[Dict[str, Optional[str]]] = None) -> str:
        """Extract, resolve and store a note in one go.

        Args:
            text: Note to remember
            resolutions: Manual entity resolutions, see store_prepared

        Returns:
            The new memory id

        Raises:
            AmbiguousResolutionError: If an entity needs a manual resolution
            MemoryManagementError: On unexpected failures
        """
        try:
            memory_id = self.store_prepared(self.prepare_memory(text), resolutions)
            logger.info(f'Remembered memory {memory_id}')
            return memory_id
        except RecallGraphError:
            raise
        except Exception as e:
            logger.error(f'Unexpected error while remembering: {e}')
            raise MemoryManagementError(f'Remember failed: {e}') from e

    # Retrieval

    def recall(self, query: str, k: int = 5, use_graph_expansion: bool = True) -> List[Memory]:
        """Return up to k memories relevant to a query, best first."""
        if not query or not query.strip():
            raise ValidationError('Query must not be empty')

        embedding = self.embedder.embed_query(query)
        if use_graph_expansion:
            scored = self.retrieval.hybrid_search(embedding, k)
        else:
            scored = self.retrieval.vector_search(embedding, k)

        logger.debug(f"Recalled {len(scored)} memories for '{query}'")
        return [s.memory for s in scored]

    def answer(self, question: str, k: int = 5, use_graph_expansion: bool = True) -> Tuple[str, List[Memory]]:
        """Answer a question from memory.

        Returns:
            Tuple of (answer, memories the answer was based on)
        """
        memories = self.recall(question, k, use_graph_expansion)
        entities = self.retrieval.entity_context(memories)
        text, used = self.answerer.synthesize(question, memories, entities)
        sources = [memories[i - 1] for i in used if 1 <= i <= len(memories)]
        return text, sources

    def mark_todo_done(self, query: str, resolution_summary: Optional[str] = None) -> str:
        """Find the open todo a request refers to and mark it done.

        Returns:
            Id of the completed todo

        Raises:
            NotFoundError: If no open todo matches
        """
        embedding = self.embedder.embed_query(query)
        hits = self.retrieval.vector_search(embedding, self.config.retrieval.todo_search_limit)
        todos = [h.memory for h in hits if h.memory.type == 'todo' and h.memory.status == 'open']
        if not todos:
            raise NotFoundError('todo', query, f"No open todo matches '{query}'")

        todo = todos[0] if len(todos) == 1 else todos[self.disambiguator.select_todo(query, todos)]
        self.memories.set_todo_status(todo.id, 'done', resolution_summary)
        return todo.id

    def list_recent(self, limit: int = 10) -> List[Memory]:
        return self.memories.list_recent(limit)

    def list_open_todos(self) -> List[Memory]:
        return self.memories.list_open_todos()

    # Entities

    def find_similar_entities(self, name: str, entity_type: Optional[str] = None) -> List[EntityCandidate]:
        return self.retrieval.find_similar_entities(name, entity_type)

    def merge_entities(self, keep_id: str, remove_id: str) -> Entity:
        return self.entities.merge_entities(keep_id, remove_id)

    def get_entity_history(self, entity_id: str, limit: int = 10) -> Tuple[Entity, List[EntityVersion]]:
        return self.entities.get_history(entity_id, limit)

    def update_entity_properties(self, entity_id: str, updates: Dict[str, str],
                                 expected_version: Optional[int] = None) -> Entity:
        return self.entities.update_properties(entity_id, updates, expected_version)

    def get_entity_details(self, entity_id: str) -> EntityDetails:
        return self.entities.get_entity_details(entity_id)

    def list_entities(self) -> List[EntityCandidate]:
        return self.entities.list_entities()

    def find_merge_candidates(self) -> List[MergeCandidate]:
        return self.entities.find_merge_candidates(self.disambiguator)

    # Export / import

    def export_memories(self, file_path: str) -> int:
        """Write every memory's content to a JSON file, oldest first.

        Returns:
            Number of memories exported
        """
        memories = self.memories.all_memories()
        data = {
            'version': EXPORT_FORMAT_VERSION,
            'exportDate': to_iso(utc_now()),
            'count': len(memories),
            'memories': [m.content for m in memories]
        }
        with open(file_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

        logger.info(f'Exported {len(memories)} memories to {file_path}')
        return len(memories)

    def import_memories(self, file_path: str) -> int:
        """Re-remember every memory in an export file.

        Items may be plain strings or objects with 'originalText' or 'content'. Items whose
        entities need manual disambiguation are skipped.

        Returns:
            Number of memories imported
        """
        with open(file_path, 'r', encoding='utf-8') as f:
            data = json.load(f)

        imported = 0
        for item in data.get('memories') or []:
            content = item if isinstance(item, str) else (item.get('originalText') or item.get('content'))
            if not content:
                continue
            try:
                self.remember(content)
                imported += 1
            except AmbiguousResolutionError as e:
                logger.warning(f'Skipping imported memory: {e}')

        logger.info(f'Imported {imported} memories from {file_path}')
        return imported

    def health_check(self) -> bool:
        return self.store.health_check()
