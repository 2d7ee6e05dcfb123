"""Tests for entity resolution, versioning and merging."""

from datetime import timedelta

import pytest

from recallgraph.models.core import (Ambiguous, DisambiguationVerdict, Memory, NewEntity, Relationship, Resolved,
                                     new_id)
from recallgraph.models.errors import ConflictError, IndexUnavailableError, NotFoundError, ValidationError
from recallgraph.services.entity_store import EntityStore
from recallgraph.utils.local_graph import InMemoryGraphStore
from recallgraph.utils.timestamp_utils import utc_now


def add_memory(memory_store, text, *entity_ids):
    memory_id = memory_store.create_memory(Memory(id=new_id(), content=text, summary=text, type='episodic', timestamp=utc_now()))
    for entity_id in entity_ids:
        memory_store.store.add_mention(memory_id, entity_id)
    return memory_id


class TestUpsert:

    def test_case_and_whitespace_variants_share_one_entity(self, entity_store):
        first = entity_store.upsert('Sarah', 'person')
        assert entity_store.upsert('  SARAH ', 'person') == first
        assert entity_store.upsert('sarah', 'person') == first
        assert len(entity_store.store.list_entities()) == 1

    def test_latest_display_name_wins(self, entity_store):
        entity_id = entity_store.upsert('sarah', 'person')
        entity_store.upsert('Sarah', 'person')
        assert entity_store.get_entity(entity_id).name == 'Sarah'

    def test_same_name_different_type_is_different_entity(self, entity_store):
        assert entity_store.upsert('Paris', 'place') != entity_store.upsert('Paris', 'person')

    def test_new_entity_starts_at_version_zero(self, entity_store):
        entity = entity_store.get_entity(entity_store.upsert('John', 'person'))
        assert entity.version == 0
        assert entity.properties == {}
        assert entity.aliases == []

    def test_alias_match_reuses_entity(self, entity_store):
        entity_id = entity_store.upsert('John', 'person')
        entity_store.add_aliases(entity_id, ['Johnny'])
        assert entity_store.upsert('johnny', 'person') == entity_id

    def test_rejects_unknown_type_and_empty_name(self, entity_store):
        with pytest.raises(ValidationError):
            entity_store.upsert('John', 'robot')
        with pytest.raises(ValidationError):
            entity_store.upsert('   ', 'person')


class TestResolve:

    def test_exact_match_scores_one(self, entity_store):
        entity_id = entity_store.upsert('Sarah', 'person')
        candidates = entity_store.resolve('SARAH', 'person')
        assert candidates[0].entity.id == entity_id
        assert candidates[0].score == 1.0

    def test_fuzzy_word_match_has_fractional_score(self, entity_store):
        entity_store.upsert('John', 'person')
        candidates = entity_store.resolve('Jon', 'person')
        assert len(candidates) == 1
        assert 0.3 <= candidates[0].score < 1.0

    def test_no_duplicate_ids_and_sorted(self, entity_store):
        john = entity_store.upsert('John', 'person')
        john_doe = entity_store.upsert('John Doe', 'person')
        candidates = entity_store.resolve('John Doe', 'person')
        ids = [c.entity.id for c in candidates]
        assert len(ids) == len(set(ids))
        assert ids[0] == john_doe
        assert candidates[0].score == 1.0
        assert john in ids
        scores = [c.score for c in candidates]
        assert scores == sorted(scores, reverse=True)

    def test_type_filter(self, entity_store):
        entity_store.upsert('Paris', 'place')
        assert entity_store.resolve('Paris', 'person') == []

    def test_alias_exact_match(self, entity_store):
        entity_id = entity_store.upsert('Robert', 'person')
        entity_store.add_aliases(entity_id, ['Bob'])
        candidates = entity_store.resolve('bob')
        assert candidates[0].entity.id == entity_id
        assert candidates[0].score == 1.0

    def test_missing_fuzzy_index_keeps_exact_matches(self, retrieval_config):
        store = EntityStore(InMemoryGraphStore(indexes=('memory', 'question')), retrieval_config)
        entity_id = store.upsert('Sarah', 'person')
        candidates = store.resolve('sarah')
        assert [c.entity.id for c in candidates] == [entity_id]

    def test_missing_fuzzy_index_raises_from_substrate(self):
        with pytest.raises(IndexUnavailableError):
            InMemoryGraphStore(indexes=()).fuzzy_search_entities('sarah', None, 10)


class TestVersioning:

    def test_single_update(self, entity_store):
        john = entity_store.upsert('John', 'person')
        entity = entity_store.update_properties(john, {'lastName': 'Jackson'})
        assert entity.version == 1
        assert entity.properties == {'lastName': 'Jackson'}

        current, history = entity_store.get_history(john)
        assert current.version == 1
        assert len(history) == 1
        assert history[0].version == 0
        assert history[0].properties == {}

    def test_history_tracks_each_pre_update_state(self, entity_store):
        entity_id = entity_store.upsert('Ana', 'person')
        entity_store.update_properties(entity_id, {'city': 'Lisbon'})
        entity_store.update_properties(entity_id, {'city': 'Porto', 'job': 'chef'})
        entity_store.update_properties(entity_id, {'job': 'baker'})

        current, history = entity_store.get_history(entity_id, limit=10)
        assert current.version == 3
        assert current.properties == {'city': 'Porto', 'job': 'baker'}
        assert [v.version for v in history] == [2, 1, 0]
        assert history[0].properties == {'city': 'Porto', 'job': 'chef'}
        assert history[1].properties == {'city': 'Lisbon'}
        assert history[2].properties == {}

    def test_history_limit(self, entity_store):
        entity_id = entity_store.upsert('Ana', 'person')
        for i in range(4):
            entity_store.update_properties(entity_id, {'n': str(i)})
        _, history = entity_store.get_history(entity_id, limit=2)
        assert [v.version for v in history] == [3, 2]

    def test_unknown_entity(self, entity_store):
        with pytest.raises(NotFoundError):
            entity_store.update_properties('missing', {'a': 'b'})
        with pytest.raises(NotFoundError):
            entity_store.get_history('missing')

    def test_expected_version_conflict(self, entity_store):
        entity_id = entity_store.upsert('Ana', 'person')
        entity_store.update_properties(entity_id, {'city': 'Lisbon'}, expected_version=0)
        with pytest.raises(ConflictError) as exc:
            entity_store.update_properties(entity_id, {'city': 'Porto'}, expected_version=0)
        assert exc.value.actual == 1
        assert entity_store.get_entity(entity_id).properties == {'city': 'Lisbon'}

    def test_rejects_invalid_updates(self, entity_store):
        entity_id = entity_store.upsert('Ana', 'person')
        with pytest.raises(ValidationError):
            entity_store.update_properties(entity_id, {})
        with pytest.raises(ValidationError):
            entity_store.update_properties(entity_id, {'age': 30})
        assert entity_store.get_entity(entity_id).version == 0


class TestAliases:

    def test_aliases_are_deduplicated_case_insensitively(self, entity_store):
        entity_id = entity_store.upsert('John', 'person')
        entity = entity_store.add_aliases(entity_id, ['Johnny', 'JOHNNY', ' john ', 'J. Smith'])
        assert entity.aliases == ['Johnny', 'J. Smith']


class TestMerge:

    def test_merge_moves_relationships_and_aliases(self, entity_store, graph):
        john = entity_store.upsert('John', 'person')
        john_doe = entity_store.upsert('John Doe', 'person')
        google = entity_store.upsert('Google', 'organization')
        now = utc_now()
        graph.save_relationship(Relationship(john_doe, google, 'WORKS_AT', 'engineer', now, now))

        keep = entity_store.merge_entities(john, john_doe)

        assert 'John Doe' in keep.aliases
        assert graph.get_entity(john_doe) is None
        assert graph.get_relationship(john, google, 'WORKS_AT').context == 'engineer'
        assert entity_store.resolve('John Doe')[0].entity.id == john

    def test_merge_sums_mention_counts(self, entity_store, memory_store, graph):
        john = entity_store.upsert('John', 'person')
        john_doe = entity_store.upsert('John Doe', 'person')
        add_memory(memory_store, 'lunch with John', john)
        add_memory(memory_store, 'call John Doe', john_doe)
        add_memory(memory_store, 'email John Doe', john_doe)

        entity_store.merge_entities(john, john_doe)
        assert graph.mention_count(john) == 3

    def test_shared_memory_is_not_double_counted(self, entity_store, memory_store, graph):
        john = entity_store.upsert('John', 'person')
        john_doe = entity_store.upsert('John Doe', 'person')
        memory_id = add_memory(memory_store, 'John aka John Doe', john, john_doe)

        entity_store.merge_entities(john, john_doe)
        assert graph.mention_count(john) == 1
        assert graph.mentioning_memory_ids(john) == [memory_id]

    def test_second_merge_raises_not_found(self, entity_store):
        john = entity_store.upsert('John', 'person')
        john_doe = entity_store.upsert('John Doe', 'person')
        entity_store.merge_entities(john, john_doe)
        with pytest.raises(NotFoundError):
            entity_store.merge_entities(john, john_doe)

    def test_merge_with_self_is_rejected(self, entity_store):
        john = entity_store.upsert('John', 'person')
        with pytest.raises(ValidationError):
            entity_store.merge_entities(john, john)

    def test_edges_between_the_pair_are_dropped(self, entity_store, graph):
        john = entity_store.upsert('John', 'person')
        john_doe = entity_store.upsert('John Doe', 'person')
        now = utc_now()
        graph.save_relationship(Relationship(john, john_doe, 'KNOWS', '', now, now))

        entity_store.merge_entities(john, john_doe)
        assert graph.relationships_of(john) == []

    def test_duplicate_edges_are_merged(self, entity_store, graph):
        john = entity_store.upsert('John', 'person')
        john_doe = entity_store.upsert('John Doe', 'person')
        google = entity_store.upsert('Google', 'organization')
        earlier = utc_now() - timedelta(days=30)
        later = utc_now()
        graph.save_relationship(Relationship(john, google, 'WORKS_AT', '', later, later))
        graph.save_relationship(Relationship(john_doe, google, 'WORKS_AT', 'since 2020', earlier, earlier))

        entity_store.merge_entities(john, john_doe)

        edges = [r for r in graph.relationships_of(john) if r.type == 'WORKS_AT']
        assert len(edges) == 1
        assert edges[0].first_seen == earlier
        assert edges[0].last_seen == later
        assert edges[0].context == 'since 2020'

    def test_incoming_edges_are_moved(self, entity_store, graph):
        john = entity_store.upsert('John', 'person')
        john_doe = entity_store.upsert('John Doe', 'person')
        sarah = entity_store.upsert('Sarah', 'person')
        now = utc_now()
        graph.save_relationship(Relationship(sarah, john_doe, 'KNOWS', '', now, now))

        entity_store.merge_entities(john, john_doe)
        assert graph.get_relationship(sarah, john, 'KNOWS') is not None


class TestDisambiguate:

    def test_no_candidates_is_new_entity(self, entity_store, disambiguator):
        assert isinstance(entity_store.disambiguate('Zed', 'person', '', [], disambiguator), NewEntity)
        assert disambiguator.calls == []

    def test_single_exact_candidate_resolves_without_oracle(self, entity_store, disambiguator):
        entity_id = entity_store.upsert('Sarah', 'person')
        candidates = entity_store.resolve('sarah', 'person')
        resolution = entity_store.disambiguate('sarah', 'person', '', candidates, disambiguator)
        assert resolution == Resolved(entity_id=entity_id, reasoning='exact match')
        assert disambiguator.calls == []

    def test_high_confidence_selection_resolves(self, entity_store, disambiguator):
        entity_store.upsert('John', 'person')
        john_doe = entity_store.upsert('John Doe', 'person')
        candidates = entity_store.resolve('John', 'person')
        index = [c.entity.id for c in candidates].index(john_doe) + 1
        disambiguator.verdict = DisambiguationVerdict(selected_index=index, confidence='high', reasoning='works at Google')

        resolution = entity_store.disambiguate('John', 'person', 'John from Google', candidates, disambiguator)
        assert isinstance(resolution, Resolved)
        assert resolution.entity_id == john_doe

    @pytest.mark.parametrize('verdict', [
        DisambiguationVerdict(selected_index=1, confidence='medium'),
        DisambiguationVerdict(selected_index=-1, confidence='high'),
        DisambiguationVerdict(selected_index=7, confidence='high'),
    ])
    def test_inconclusive_verdict_is_ambiguous(self, entity_store, disambiguator, verdict):
        entity_store.upsert('John', 'person')
        entity_store.upsert('John Doe', 'person')
        candidates = entity_store.resolve('John', 'person')
        disambiguator.verdict = verdict

        resolution = entity_store.disambiguate('John', 'person', '', candidates, disambiguator)
        assert isinstance(resolution, Ambiguous)
        assert len(resolution.candidates) == 2

    def test_index_zero_is_new_entity(self, entity_store, disambiguator):
        entity_store.upsert('John', 'person')
        entity_store.upsert('John Doe', 'person')
        disambiguator.verdict = DisambiguationVerdict(selected_index=0, confidence='high')
        candidates = entity_store.resolve('John', 'person')
        assert isinstance(entity_store.disambiguate('John', 'person', '', candidates, disambiguator), NewEntity)


class TestListingAndMergeCandidates:

    def test_list_entities_by_mentions(self, entity_store, memory_store):
        ana = entity_store.upsert('Ana', 'person')
        bob = entity_store.upsert('Bob', 'person')
        add_memory(memory_store, 'one', bob)
        add_memory(memory_store, 'two', bob, ana)
        listed = entity_store.list_entities()
        assert [c.entity.id for c in listed] == [bob, ana]
        assert [c.memory_count for c in listed] == [2, 1]

    def test_find_merge_candidates(self, entity_store, memory_store, disambiguator):
        jonathan = entity_store.upsert('Jonathan', 'person')
        jonathon = entity_store.upsert('Jonathon', 'person')
        entity_store.upsert('Jonas Brothers', 'organization')
        add_memory(memory_store, 'met Jonathon', jonathon)
        disambiguator.verdict = DisambiguationVerdict(selected_index=1, confidence='medium', reasoning='typo')

        suggestions = entity_store.find_merge_candidates(disambiguator)

        assert len(suggestions) == 1
        pair = [c.entity.id for c in suggestions[0].entities]
        assert set(pair) == {jonathan, jonathon}
        assert pair[suggestions[0].suggested_keep] == jonathon
        assert suggestions[0].confidence == 'medium'

    def test_rejected_pairs_are_not_suggested(self, entity_store, disambiguator):
        entity_store.upsert('Jonathan', 'person')
        entity_store.upsert('Jonathon', 'person')
        disambiguator.verdict = DisambiguationVerdict(selected_index=0, confidence='high')
        assert entity_store.find_merge_candidates(disambiguator) == []

