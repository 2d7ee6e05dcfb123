"""
Entity Extraction Service: turns a free-text note into a validated ExtractedMemory.
"""

from typing import Any, Dict, List, Optional

from ..models.core import (ENTITY_TYPES, MEMORY_TYPES, RELATIONSHIP_TYPES, SENTIMENTS, TIMES_OF_DAY, ExtractedEntity,
                           ExtractedMemory, ExtractedRelationship, MemoryMetadata, PropertyUpdate, TemporalInfo,
                           normalize_name)
from ..models.errors import RecallGraphError, UpstreamTransientError, ValidationError
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import config
from ..utils.logging_config import get_logger
from .prompts import EXTRACTION_SYSTEM_PROMPT

logger = get_logger(__name__)

MAX_HYPOTHETICAL_QUESTIONS = 5


class EntityExtractionError(RecallGraphError):
    """Custom exception for entity extraction errors."""
    pass


def _pick(data: Dict[str, Any], *keys: str) -> Any:
    """First present key; the model sometimes answers in camelCase."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip() and value.strip().lower() != 'null':
        return value.strip()
    return None


def _choice(value: Any, allowed) -> Optional[str]:
    value = _text(value)
    if value is None:
        return None
    value = value.lower()
    return value if value in allowed else None


class EntityExtractionService:
    """Extract summary, type, entities, relationships and metadata from a note using Bedrock LLMs."""

    def __init__(self, llm: Optional[BedrockLLM] = None, max_attempts: int = 2):
        """Initialize the entity extraction service.

        Args:
            llm: Bedrock LLM client, built from the global config if None
            max_attempts: Calls to make before giving up on unparseable output
        """
        self.llm = llm or BedrockLLM(config.bedrock_llm)
        self.max_attempts = max_attempts

        logger.info('Initialized EntityExtractionService')

    def extract(self, text: str) -> ExtractedMemory:
        """Extract structured information from a note.

        Args:
            text: The note as written by the user

        Returns:
            Validated ExtractedMemory

        Raises:
            ValidationError: If text is empty
            EntityExtractionError: If the model output cannot be used
        """
        if not text or not text.strip():
            raise ValidationError('Cannot extract from empty text')

        last_error = None
        for attempt in range(self.max_attempts):
            try:
                data = self.llm.generate_json(prompt=f'Text: {text}', system_prompt=EXTRACTION_SYSTEM_PROMPT)
                extracted = self.parse(data)
                logger.debug(f'Extracted {extracted.type} memory with {len(extracted.entities)} entities and '
                             f'{len(extracted.relationships)} relationships')
                return extracted
            except UpstreamTransientError:
                raise
            except (BedrockLLMError, EntityExtractionError) as e:
                logger.warning(f'Extraction attempt {attempt + 1}/{self.max_attempts} failed: {e}')
                last_error = e

        raise EntityExtractionError(f'Entity extraction failed: {last_error}')

    def parse(self, data: Dict[str, Any]) -> ExtractedMemory:
        """Validate decoded model output.

        An unknown memory type rejects the whole output; malformed entities, relationships
        and property updates are dropped individually.
        """
        memory_type = _choice(data.get('type'), MEMORY_TYPES)
        if memory_type is None:
            raise EntityExtractionError(f"Invalid memory type: {data.get('type')!r}")

        summary = _text(data.get('summary'))
        if summary is None:
            raise EntityExtractionError('Missing summary')

        temporal_data = data.get('temporal') if isinstance(data.get('temporal'), dict) else {}
        metadata_data = data.get('metadata') if isinstance(data.get('metadata'), dict) else {}
        time_of_day = _choice(_pick(temporal_data, 'time_of_day', 'timeOfDay'), TIMES_OF_DAY)

        references = temporal_data.get('references') or []
        temporal = TemporalInfo(references=[r.strip() for r in references if _text(r)] if isinstance(references, list) else [],
                                time_of_day=time_of_day)

        metadata = MemoryMetadata(location=_text(metadata_data.get('location')),
                                  activity=_text(metadata_data.get('activity')),
                                  sentiment=_choice(metadata_data.get('sentiment'), SENTIMENTS),
                                  time_of_day=time_of_day)

        questions = _pick(data, 'hypothetical_questions', 'hypotheticalQuestions') or []
        questions = [q.strip() for q in questions if _text(q)] if isinstance(questions, list) else []

        return ExtractedMemory(summary=summary,
                               type=memory_type,
                               entities=self._parse_entities(data.get('entities')),
                               relationships=self._parse_relationships(data.get('relationships')),
                               property_updates=self._parse_property_updates(
                                   _pick(data, 'property_updates', 'propertyUpdates')),
                               temporal=temporal,
                               metadata=metadata,
                               hypothetical_questions=questions[:MAX_HYPOTHETICAL_QUESTIONS])

    def _parse_entities(self, items: Any) -> List[ExtractedEntity]:
        entities = []
        seen = set()
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            name = _text(item.get('name'))
            entity_type = _choice(item.get('type'), ENTITY_TYPES)
            if name is None or entity_type is None:
                logger.warning(f'Dropping invalid entity: {item}')
                continue

            key = (normalize_name(name), entity_type)
            if key in seen:
                continue
            seen.add(key)
            entities.append(ExtractedEntity(name=name, type=entity_type, context=_text(item.get('context'))))
        return entities

    def _parse_relationships(self, items: Any) -> List[ExtractedRelationship]:
        relationships = []
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            from_name = _text(_pick(item, 'from', 'from_name'))
            to_name = _text(_pick(item, 'to', 'to_name'))
            rel_type = (_text(item.get('type')) or '').upper()
            if from_name is None or to_name is None or rel_type not in RELATIONSHIP_TYPES:
                logger.warning(f'Dropping invalid relationship: {item}')
                continue
            relationships.append(
                ExtractedRelationship(from_name=from_name, to_name=to_name, type=rel_type, context=_text(item.get('context'))))
        return relationships

    def _parse_property_updates(self, items: Any) -> List[PropertyUpdate]:
        updates = []
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            name = _text(_pick(item, 'entity', 'entity_name', 'entityName'))
            values = item.get('updates')
            if name is None or not isinstance(values, dict):
                logger.warning(f'Dropping invalid property update: {item}')
                continue

            clean = {str(k).strip(): str(v).strip() for k, v in values.items() if str(k).strip() and v is not None}
            if clean:
                updates.append(PropertyUpdate(entity_name=name, updates=clean))
        return updates
