"""
Entity identity, versioning and merging over a GraphStore.
"""

from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Tuple

from ..models.core import (ENTITY_TYPES, Ambiguous, DisambiguationVerdict, Entity, EntityCandidate, EntityDetails,
                           EntityVersion, MergeCandidate, NewEntity, Relationship, Resolution, Resolved, new_id,
                           normalize_name)
from ..models.errors import ConflictError, IndexUnavailableError, NotFoundError, ValidationError
from ..utils.config import RetrievalConfig, config
from ..utils.graph_store import GraphStore
from ..utils.logging_config import get_logger
from ..utils.text_similarity import name_similarity
from ..utils.timestamp_utils import utc_now

logger = get_logger(__name__)

MERGE_SIMILARITY_THRESHOLD = 0.7
MERGE_PREFIX_LENGTH = 3


def _earliest(a, b):
    if a is None or b is None:
        return a or b
    return min(a, b)


def _latest(a, b):
    if a is None or b is None:
        return a or b
    return max(a, b)


class EntityStore:
    """Resolve, create, version and merge entities."""

    def __init__(self, store: GraphStore, retrieval_config: Optional[RetrievalConfig] = None):
        self.store = store
        self.config = retrieval_config or config.retrieval

    def _require(self, entity_id: str) -> Entity:
        entity = self.store.get_entity(entity_id)
        if entity is None:
            raise NotFoundError('entity', entity_id)
        return entity

    def _candidate(self, entity: Entity, score: float) -> EntityCandidate:
        return EntityCandidate(entity=entity, score=score, memory_count=self.store.mention_count(entity.id))

    def resolve(self, name: str, entity_type: Optional[str] = None) -> List[EntityCandidate]:
        """Find existing entities a name may refer to.

        An exact match on the normalized name or any alias scores 1.0. Each word of two or
        more characters is then fuzzy-matched against names and aliases; hits below the
        configured minimum score are ignored. Results hold each entity once with its best
        score, highest first.

        Args:
            name: Name as written in the text
            entity_type: Restrict to this entity type (optional)

        Returns:
            Candidates sorted by score descending
        """
        normalized = normalize_name(name)
        if not normalized:
            return []

        scores: Dict[str, float] = OrderedDict()
        entities: Dict[str, Entity] = {}
        for entity in self.store.find_entities_by_name(normalized, entity_type):
            scores[entity.id] = 1.0
            entities[entity.id] = entity

        for word in normalized.split():
            if len(word) < 2:
                continue
            try:
                hits = self.store.fuzzy_search_entities(word, entity_type, self.config.fuzzy_limit)
            except IndexUnavailableError as e:
                logger.warning(f'Fuzzy entity search unavailable, using exact matches only: {e}')
                break

            for entity, score in hits:
                if score < self.config.fuzzy_min_score:
                    continue
                if score > scores.get(entity.id, 0.0):
                    scores[entity.id] = score
                entities.setdefault(entity.id, entity)

        ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)
        logger.debug(f"Resolved '{name}' to {len(ranked)} candidates")
        return [self._candidate(entities[entity_id], score) for entity_id, score in ranked]

    def upsert(self, name: str, entity_type: str) -> str:
        """Return the id of the entity with this (name, type), creating it if needed.

        The display name of an existing entity is overwritten with the latest spelling.
        A same-type entity that carries the name as an alias is reused as-is.
        """
        display = ' '.join((name or '').split())
        normalized = normalize_name(display)
        if not normalized:
            raise ValidationError('Entity name must not be empty')
        if entity_type not in ENTITY_TYPES:
            raise ValidationError(f'Invalid entity type: {entity_type}')

        with self.store.transaction():
            existing = self.store.find_entity_by_key(normalized, entity_type)
            if existing is not None:
                if existing.name != display:
                    existing.name = display
                    self.store.save_entity(existing)
                return existing.id

            by_alias = self.store.find_entities_by_name(normalized, entity_type)
            if by_alias:
                return by_alias[0].id

            entity = Entity(id=new_id(), name=display, normalized_name=normalized, type=entity_type)
            self.store.create_entity(entity)
            logger.debug(f"Created entity '{display}' ({entity_type}): {entity.id}")
            return entity.id

    def update_properties(self, entity_id: str, updates: Dict[str, str], expected_version: Optional[int] = None) -> Entity:
        """Merge property updates into an entity, recording the previous state in its version log.

        Args:
            entity_id: Entity to update
            updates: Property name to new value, last write wins per key
            expected_version: Reject the update if the entity is no longer at this version

        Returns:
            The updated entity

        Raises:
            NotFoundError: Unknown entity id
            ConflictError: expected_version does not match the stored version
            ValidationError: Empty updates or non-string keys or values
        """
        if not updates:
            raise ValidationError('No property updates given')
        for key, value in updates.items():
            if not isinstance(key, str) or not key or not isinstance(value, str):
                raise ValidationError(f'Property updates must map non-empty strings to strings, got {key!r}: {value!r}')

        with self.store.transaction():
            entity = self._require(entity_id)
            if expected_version is not None and entity.version != expected_version:
                raise ConflictError(entity_id, expected_version, entity.version)

            now = utc_now()
            self.store.append_version(
                EntityVersion(id=new_id(),
                              entity_id=entity.id,
                              version=entity.version,
                              name=entity.name,
                              properties=dict(entity.properties),
                              created_at=now))

            entity.properties.update(updates)
            entity.version += 1
            entity.updated_at = now
            self.store.save_entity(entity)

        logger.info(f'Updated entity {entity_id} to version {entity.version}')
        return entity

    def _merge_aliases(self, entity: Entity, names: Iterable[str]) -> None:
        seen = {entity.normalized_name}
        seen.update(normalize_name(a) for a in entity.aliases)
        for name in names:
            display = ' '.join((name or '').split())
            key = normalize_name(display)
            if key and key not in seen:
                entity.aliases.append(display)
                seen.add(key)

    def add_aliases(self, entity_id: str, aliases: List[str]) -> Entity:
        with self.store.transaction():
            entity = self._require(entity_id)
            self._merge_aliases(entity, aliases)
            self.store.save_entity(entity)
        return entity

    def get_entity(self, entity_id: str) -> Entity:
        return self._require(entity_id)

    def get_entity_details(self, entity_id: str) -> EntityDetails:
        entity = self._require(entity_id)
        return EntityDetails(entity=entity,
                             memory_count=self.store.mention_count(entity_id),
                             relationships=self.store.relationships_of(entity_id))

    def get_history(self, entity_id: str, limit: int = 10) -> Tuple[Entity, List[EntityVersion]]:
        """Current entity plus its previous versions, newest first."""
        entity = self._require(entity_id)
        return entity, self.store.list_versions(entity_id, limit)

    def merge_entities(self, keep_id: str, remove_id: str) -> Entity:
        """Fold remove into keep.

        Mentions and typed relationships of remove are re-pointed at keep, without duplicating
        an edge keep already has and dropping edges that would become self-loops. remove's name
        and aliases become aliases of keep, then remove is deleted. All in one transaction.

        Raises:
            ValidationError: keep_id equals remove_id
            NotFoundError: Either entity does not exist
        """
        if keep_id == remove_id:
            raise ValidationError('Cannot merge an entity with itself')

        with self.store.transaction():
            keep = self._require(keep_id)
            remove = self._require(remove_id)

            memory_ids = self.store.mentioning_memory_ids(remove_id)
            for memory_id in memory_ids:
                self.store.add_mention(memory_id, keep_id)
                self.store.remove_mention(memory_id, remove_id)

            moved = 0
            for rel in self.store.relationships_of(remove_id):
                from_id = keep_id if rel.from_entity == remove_id else rel.from_entity
                to_id = keep_id if rel.to_entity == remove_id else rel.to_entity
                self.store.delete_relationship(rel.from_entity, rel.to_entity, rel.type)
                if from_id == to_id:
                    logger.debug(f'Dropped {rel.type} edge that would become a self-loop on {keep_id}')
                    continue

                existing = self.store.get_relationship(from_id, to_id, rel.type)
                if existing is not None:
                    existing.first_seen = _earliest(existing.first_seen, rel.first_seen)
                    existing.last_seen = _latest(existing.last_seen, rel.last_seen)
                    existing.context = existing.context or rel.context
                    self.store.save_relationship(existing)
                else:
                    self.store.save_relationship(
                        Relationship(from_entity=from_id,
                                     to_entity=to_id,
                                     type=rel.type,
                                     context=rel.context,
                                     first_seen=rel.first_seen,
                                     last_seen=rel.last_seen))
                moved += 1

            self._merge_aliases(keep, [remove.name] + list(remove.aliases))
            keep.updated_at = utc_now()
            self.store.save_entity(keep)
            self.store.delete_entity(remove_id)

        logger.info(f"Merged entity '{remove.name}' into '{keep.name}' "
                    f'({len(memory_ids)} mentions, {moved} relationships)')
        return keep

    def disambiguate(self, name: str, entity_type: str, context: str, candidates: List[EntityCandidate],
                     oracle) -> Resolution:
        """Decide which candidate, if any, a mention refers to.

        The oracle is only consulted when there are two or more candidates, and its choice is
        only accepted with high confidence.

        Args:
            name: Entity name as mentioned
            entity_type: Entity type
            context: Text the mention appeared in
            candidates: Output of resolve()
            oracle: Object with disambiguate(name, entity_type, context, candidates) -> DisambiguationVerdict

        Returns:
            Resolved, NewEntity or Ambiguous
        """
        if not candidates:
            return NewEntity()
        if len(candidates) == 1:
            if candidates[0].score >= 1.0:
                return Resolved(entity_id=candidates[0].entity.id, reasoning='exact match')
            return NewEntity()

        verdict: DisambiguationVerdict = oracle.disambiguate(name, entity_type, context, candidates)
        index = verdict.selected_index
        if 0 < index <= len(candidates) and verdict.confidence == 'high':
            chosen = candidates[index - 1].entity
            logger.debug(f"Auto-resolved '{name}' to '{chosen.name}': {verdict.reasoning}")
            return Resolved(entity_id=chosen.id, reasoning=verdict.reasoning)
        if index == 0:
            return NewEntity()

        logger.debug(f"Could not resolve '{name}' ({verdict.confidence} confidence, index {index})")
        return Ambiguous(candidates=list(candidates))

    def list_entities(self) -> List[EntityCandidate]:
        """All entities with their mention counts, most mentioned first."""
        candidates = [self._candidate(e, 1.0) for e in self.store.list_entities()]
        candidates.sort(key=lambda c: c.memory_count, reverse=True)
        return candidates

    def find_merge_candidates(self, oracle) -> List[MergeCandidate]:
        """Suggest pairs of same-type entities that probably name the same thing.

        Entities are grouped by the first characters of their normalized name, compared by name
        similarity, and pairs above the threshold are confirmed with the oracle.
        """
        groups: Dict[str, List[EntityCandidate]] = OrderedDict()
        for candidate in self.list_entities():
            prefix = candidate.entity.normalized_name[:MERGE_PREFIX_LENGTH]
            groups.setdefault(prefix, []).append(candidate)

        suggestions = []
        for group in groups.values():
            for i, first in enumerate(group):
                for second in group[i + 1:]:
                    if first.entity.type != second.entity.type:
                        continue
                    similarity = name_similarity(first.entity.name, second.entity.name)
                    if similarity < MERGE_SIMILARITY_THRESHOLD:
                        continue

                    verdict = oracle.disambiguate(first.entity.name, first.entity.type,
                                                  f'Comparing "{first.entity.name}" with "{second.entity.name}"',
                                                  [first, second])
                    if verdict.selected_index > 0:
                        suggestions.append(
                            MergeCandidate(entities=[first, second],
                                           suggested_keep=0 if first.memory_count >= second.memory_count else 1,
                                           reasoning=verdict.reasoning,
                                           confidence=verdict.confidence))

        logger.info(f'Found {len(suggestions)} merge candidates')
        return suggestions
