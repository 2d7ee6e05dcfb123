"""
Core data models for the knowledge-graph memory store.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple, Union

MEMORY_TYPES = ('episodic', 'semantic', 'todo', 'reflection')
ENTITY_TYPES = ('person', 'place', 'concept', 'organization')
RELATIONSHIP_TYPES = ('KNOWS', 'WORKS_AT', 'LIVES_IN', 'VISITED', 'RELATED_TO', 'PART_OF', 'MENTIONED_WITH', 'LIKES',
                      'DISLIKES', 'PREFERS')
TODO_STATUSES = ('open', 'done')
SENTIMENTS = ('positive', 'neutral', 'negative')
TIMES_OF_DAY = ('morning', 'afternoon', 'evening')
CONFIDENCE_LEVELS = ('high', 'medium', 'low')


def new_id() -> str:
    return str(uuid.uuid4())


def normalize_name(name: str) -> str:
    """Fold case and whitespace so that 'Sarah', ' sarah ' and 'SARAH' share one key."""
    return ' '.join((name or '').split()).lower()


@dataclass
class MemoryMetadata:
    """Optional situational metadata attached to a memory."""
    location: Optional[str] = None
    activity: Optional[str] = None
    sentiment: Optional[str] = None
    time_of_day: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class Memory:
    """A stored observation. Immutable except for the todo status fields."""
    id: str
    content: str
    summary: str
    type: str
    timestamp: datetime
    embedding: List[float] = field(default_factory=list)
    metadata: MemoryMetadata = field(default_factory=MemoryMetadata)
    status: Optional[str] = None
    resolution_summary: Optional[str] = None
    resolved_at: Optional[datetime] = None


@dataclass
class Entity:
    """A named, typed, deduplicated node. (normalized_name, type) is its natural key."""
    id: str
    name: str
    normalized_name: str
    type: str
    aliases: List[str] = field(default_factory=list)
    properties: Dict[str, str] = field(default_factory=dict)
    version: int = 0
    updated_at: Optional[datetime] = None


@dataclass
class EntityVersion:
    """Snapshot of an entity as it was immediately before the update that produced version + 1."""
    id: str
    entity_id: str
    version: int
    name: str
    properties: Dict[str, str]
    created_at: datetime


@dataclass
class Relationship:
    """Typed, directed edge between two existing entities."""
    from_entity: str
    to_entity: str
    type: str
    context: str = ''
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None


@dataclass
class HypotheticalQuestion:
    """A question a user might ask to find a memory; only widens retrieval recall."""
    id: str
    memory_id: str
    question: str
    embedding: List[float]


@dataclass
class EntityCandidate:
    """An entity returned by resolution or lookup, with a score in [0, 1]."""
    entity: Entity
    score: float
    memory_count: int = 0


@dataclass
class ScoredMemory:
    memory: Memory
    score: float


@dataclass
class EntityRef:
    """An entity mention to attach to a memory, optionally pre-resolved to an id."""
    name: str
    type: str
    context: Optional[str] = None
    resolved_id: Optional[str] = None


# Resolution outcome for one extracted entity
@dataclass
class Resolved:
    entity_id: str
    reasoning: Optional[str] = None


@dataclass
class NewEntity:
    pass


@dataclass
class Ambiguous:
    candidates: List[EntityCandidate]


Resolution = Union[Resolved, NewEntity, Ambiguous]


@dataclass
class DisambiguationVerdict:
    """Disambiguator oracle output. selected_index is 1-based; 0 means new entity, -1 unsure."""
    selected_index: int
    confidence: str
    reasoning: str = ''


# Extractor oracle output
@dataclass
class ExtractedEntity:
    name: str
    type: str
    context: Optional[str] = None


@dataclass
class ExtractedRelationship:
    from_name: str
    to_name: str
    type: str
    context: Optional[str] = None


@dataclass
class PropertyUpdate:
    entity_name: str
    updates: Dict[str, str]


@dataclass
class TemporalInfo:
    references: List[str] = field(default_factory=list)
    time_of_day: Optional[str] = None


@dataclass
class ExtractedMemory:
    summary: str
    type: str
    entities: List[ExtractedEntity] = field(default_factory=list)
    relationships: List[ExtractedRelationship] = field(default_factory=list)
    property_updates: List[PropertyUpdate] = field(default_factory=list)
    temporal: TemporalInfo = field(default_factory=TemporalInfo)
    metadata: MemoryMetadata = field(default_factory=MemoryMetadata)
    hypothetical_questions: List[str] = field(default_factory=list)


@dataclass
class MergeCandidate:
    """Two entities that probably name the same thing; suggested_keep indexes into entities."""
    entities: List[EntityCandidate]
    suggested_keep: int
    reasoning: str
    confidence: str


@dataclass
class EntityDetails:
    entity: Entity
    memory_count: int
    relationships: List[Relationship] = field(default_factory=list)


@dataclass
class PreparedMemory:
    """Everything remember() computes before writing: extraction, embeddings and per-entity resolutions."""
    text: str
    extracted: ExtractedMemory
    embedding: List[float]
    resolutions: List[Tuple[ExtractedEntity, Resolution]] = field(default_factory=list)
    questions: List[Tuple[str, List[float]]] = field(default_factory=list)

    @property
    def ambiguous(self) -> List[Tuple[ExtractedEntity, Ambiguous]]:
        return [(e, r) for e, r in self.resolutions if isinstance(r, Ambiguous)]
