"""
Memory lifecycle: creation, entity mentions, relationships, hypothetical questions and todo status.
"""

from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..models.core import (MEMORY_TYPES, RELATIONSHIP_TYPES, TODO_STATUSES, EntityRef, ExtractedRelationship,
                           HypotheticalQuestion, Memory, Relationship, new_id, normalize_name)
from ..models.errors import NotFoundError, ValidationError
from ..utils.graph_store import GraphStore
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now
from .entity_store import EntityStore

logger = get_logger(__name__)


class MemoryStore:
    """Write and read memories and the edges hanging off them."""

    def __init__(self, store: GraphStore, entities: EntityStore):
        self.store = store
        self.entities = entities

    def _require(self, memory_id: str) -> Memory:
        memory = self.store.get_memory(memory_id)
        if memory is None:
            raise NotFoundError('memory', memory_id)
        return memory

    def create_memory(self, memory: Memory) -> str:
        if not memory.content or not memory.content.strip():
            raise ValidationError('Memory content must not be empty')
        if memory.type not in MEMORY_TYPES:
            raise ValidationError(f'Invalid memory type: {memory.type}')

        if memory.type == 'todo':
            memory.status = memory.status or 'open'
        else:
            memory.status = None

        with self.store.transaction():
            self.store.create_memory(memory)
        logger.debug(f'Created {memory.type} memory {memory.id}')
        return memory.id

    def attach_mentions(self, memory_id: str, refs: Sequence[EntityRef]) -> Dict[str, str]:
        """Link a memory to the entities it mentions.

        Refs with a resolved_id link to that entity; the rest are upserted by name and type.

        Returns:
            Normalized entity name to entity id for every ref
        """
        resolution_map: Dict[str, str] = {}
        with self.store.transaction():
            self._require(memory_id)
            for ref in refs:
                if ref.resolved_id:
                    if self.store.get_entity(ref.resolved_id) is None:
                        raise NotFoundError('entity', ref.resolved_id)
                    entity_id = ref.resolved_id
                else:
                    entity_id = self.entities.upsert(ref.name, ref.type)

                self.store.add_mention(memory_id, entity_id)
                resolution_map[normalize_name(ref.name)] = entity_id
        return resolution_map

    def _endpoint(self, name: str, resolution_map: Dict[str, str]) -> Optional[str]:
        normalized = normalize_name(name)
        if normalized in resolution_map:
            return resolution_map[normalized]
        matches = self.store.find_entities_by_name(normalized)
        if len(matches) == 1:
            return matches[0].id
        return None

    def attach_relationships(self, relationships: Iterable[ExtractedRelationship], resolution_map: Dict[str, str]) -> int:
        """Create or refresh typed edges between resolved entities.

        An edge whose endpoint cannot be resolved is skipped; entities are never created here.

        Returns:
            Number of edges created or refreshed
        """
        written = 0
        now = utc_now()
        with self.store.transaction():
            for rel in relationships:
                if rel.type not in RELATIONSHIP_TYPES:
                    logger.warning(f'Skipping relationship with unknown type {rel.type}')
                    continue

                from_id = self._endpoint(rel.from_name, resolution_map)
                to_id = self._endpoint(rel.to_name, resolution_map)
                if from_id is None or to_id is None:
                    logger.warning(f"Skipping {rel.type} relationship '{rel.from_name}' -> '{rel.to_name}': "
                                   f'endpoint not resolved')
                    continue
                if from_id == to_id:
                    logger.debug(f"Skipping {rel.type} self-relationship on '{rel.from_name}'")
                    continue

                existing = self.store.get_relationship(from_id, to_id, rel.type)
                if existing is not None:
                    existing.last_seen = now
                    self.store.save_relationship(existing)
                else:
                    self.store.save_relationship(
                        Relationship(from_entity=from_id,
                                     to_entity=to_id,
                                     type=rel.type,
                                     context=rel.context or '',
                                     first_seen=now,
                                     last_seen=now))
                written += 1
        return written

    def attach_hypothetical_questions(self, memory_id: str, questions: Iterable[Tuple[str, List[float]]]) -> int:
        """Store pre-embedded questions that should retrieve this memory."""
        count = 0
        with self.store.transaction():
            self._require(memory_id)
            for question, embedding in questions:
                if not question or not question.strip():
                    continue
                self.store.add_question(
                    HypotheticalQuestion(id=new_id(), memory_id=memory_id, question=question.strip(), embedding=embedding))
                count += 1
        return count

    def set_todo_status(self, memory_id: str, status: str, resolution_summary: Optional[str] = None) -> Memory:
        """Mark a todo done.

        Only open -> done is allowed. resolved_at is set the first time; marking a done todo
        done again keeps it but replaces the resolution summary when one is given.

        Raises:
            NotFoundError: Unknown memory id
            ValidationError: Not a todo, unknown status, or an attempt to reopen
        """
        if status not in TODO_STATUSES:
            raise ValidationError(f'Unknown todo status: {status!r}')
        if status != 'done':
            raise ValidationError(f"Todo status can only be set to 'done', got {status!r}")

        with self.store.transaction():
            memory = self._require(memory_id)
            if memory.type != 'todo':
                raise ValidationError(f'Memory {memory_id} is a {memory.type} memory, not a todo')

            memory.status = 'done'
            if memory.resolved_at is None:
                memory.resolved_at = utc_now()
            if resolution_summary:
                memory.resolution_summary = resolution_summary
            self.store.save_memory(memory)

        logger.info(f'Marked todo {memory_id} as done')
        return memory

    def store_memory(self,
                     memory: Memory,
                     refs: Sequence[EntityRef] = (),
                     relationships: Iterable[ExtractedRelationship] = (),
                     questions: Iterable[Tuple[str, List[float]]] = ()) -> Tuple[str, Dict[str, str]]:
        """Write a memory with its mentions, relationships and questions in one transaction.

        Returns:
            Tuple of (memory_id, resolution_map)
        """
        with self.store.transaction():
            memory_id = self.create_memory(memory)
            resolution_map = self.attach_mentions(memory_id, refs)
            edges = self.attach_relationships(relationships, resolution_map)
            question_count = self.attach_hypothetical_questions(memory_id, questions)

        logger.info(f'Stored memory {memory_id}: {len(resolution_map)} entities, {edges} relationships, '
                    f'{question_count} questions')
        return memory_id, resolution_map

    def get_memory(self, memory_id: str) -> Memory:
        return self._require(memory_id)

    def list_recent(self, limit: int = 10) -> List[Memory]:
        return self.store.recent_memories(limit)

    def list_open_todos(self) -> List[Memory]:
        todos = [m for m in self.store.all_memories() if m.type == 'todo' and m.status == 'open']
        return list(reversed(todos))

    def all_memories(self) -> List[Memory]:
        return self.store.all_memories()
