"""End-to-end tests of the memory management service with an in-memory graph and scripted oracles."""

import json

import pytest

from recallgraph.models.core import Ambiguous, DisambiguationVerdict
from recallgraph.models.errors import AmbiguousResolutionError, NotFoundError, ValidationError

from .conftest import extraction


class TestRemember:

    def test_sarah_is_deduplicated_across_memories(self, service, extractor, graph):
        extractor.script('Met Sarah at the cafe', extraction(entities=[('Sarah', 'person'), ('cafe', 'place')]))
        extractor.script('sarah suggested a book', extraction(entities=[('sarah', 'person'), ('book', 'concept')]))
        extractor.script('Had coffee with SARAH yesterday', extraction(entities=[('SARAH', 'person')]))

        for text in ['Met Sarah at the cafe', 'sarah suggested a book', 'Had coffee with SARAH yesterday']:
            service.remember(text)

        people = [e for e in graph.list_entities() if e.type == 'person']
        assert len(people) == 1
        assert people[0].normalized_name == 'sarah'
        assert graph.mention_count(people[0].id) == 3

    def test_memory_fields_are_stored(self, service, extractor, embedder):
        extractor.script('Dinner with Sarah at Luigi',
                         extraction(summary='Dinner with Sarah',
                                    entities=[('Sarah', 'person'), ('Luigi', 'place')],
                                    relationships=[('Sarah', 'Luigi', 'VISITED')],
                                    questions=['Where did I eat with Sarah?', 'Who did I have dinner with?']))

        memory_id = service.remember('Dinner with Sarah at Luigi')

        memory = service.memories.get_memory(memory_id)
        assert memory.summary == 'Dinner with Sarah'
        assert memory.content == 'Dinner with Sarah at Luigi'
        assert memory.status is None
        sarah = service.find_similar_entities('Sarah')[0].entity
        details = service.get_entity_details(sarah.id)
        assert details.memory_count == 1
        assert [r.type for r in details.relationships] == ['VISITED']
        assert 'Where did I eat with Sarah?' in embedder.calls

    def test_todo_is_created_open(self, service, extractor):
        extractor.script('Buy milk', extraction(memory_type='todo'))
        memory_id = service.remember('Buy milk')
        assert service.memories.get_memory(memory_id).status == 'open'

    def test_property_updates_version_the_entity(self, service, extractor):
        extractor.script('Sarah moved to Berlin',
                         extraction(entities=[('Sarah', 'person')],
                                    property_updates={
                                        'Sarah': {'city': 'Berlin'},
                                        'Nobody': {'city': 'Nowhere'}
                                    }))
        service.remember('Sarah moved to Berlin')

        sarah = service.find_similar_entities('Sarah')[0].entity
        entity, history = service.get_entity_history(sarah.id)
        assert entity.version == 1
        assert entity.properties == {'city': 'Berlin'}
        assert history[0].properties == {}

    def test_empty_text_is_rejected(self, service):
        with pytest.raises(ValidationError):
            service.remember('   ')


class TestDisambiguation:

    @pytest.fixture
    def johns(self, service):
        return service.entities.upsert('John', 'person'), service.entities.upsert('John Doe', 'person')

    def test_ambiguous_entity_raises_before_writing(self, service, extractor, disambiguator, graph, johns):
        extractor.script('John called', extraction(entities=[('John', 'person')]))

        with pytest.raises(AmbiguousResolutionError) as exc:
            service.remember('John called')

        assert exc.value.name == 'John'
        assert {c.entity.id for c in exc.value.candidates} == set(johns)
        assert graph.recent_memories(10) == []
        assert len(disambiguator.calls) == 1

    def test_manual_resolution(self, service, extractor, graph, johns):
        john, john_doe = johns
        extractor.script('John called', extraction(entities=[('John', 'person')]))

        memory_id = service.remember('John called', resolutions={'john': john_doe})

        assert graph.mentioning_memory_ids(john_doe) == [memory_id]
        assert graph.mention_count(john) == 0

    def test_high_confidence_auto_resolves(self, service, extractor, disambiguator, graph, johns):
        john, john_doe = johns
        extractor.script('John from Google called', extraction(entities=[('John', 'person')]))
        disambiguator.verdict = DisambiguationVerdict(selected_index=2, confidence='high', reasoning='works at Google')

        memory_id = service.remember('John from Google called')
        assert graph.mentioning_memory_ids(john_doe) == [memory_id]

    def test_prepare_then_store(self, service, extractor, johns):
        john, _ = johns
        extractor.script('John called', extraction(entities=[('John', 'person')]))

        prepared = service.prepare_memory('John called')
        assert len(prepared.ambiguous) == 1
        assert isinstance(prepared.ambiguous[0][1], Ambiguous)

        memory_id = service.store_prepared(prepared, {'John': john})
        assert service.memories.get_memory(memory_id).content == 'John called'

    def test_manual_resolution_to_unknown_entity_rolls_back(self, service, extractor, graph):
        extractor.script('Met a ghost', extraction(entities=[('Ghost', 'person'), ('Sarah', 'person')]))

        with pytest.raises(NotFoundError):
            service.remember('Met a ghost', resolutions={'Ghost': 'missing'})

        assert graph.recent_memories(10) == []
        assert graph.list_entities() == []


class TestEntityCuration:

    def test_versioning_scenario(self, service):
        john = service.entities.upsert('John', 'person')
        entity = service.update_entity_properties(john, {'lastName': 'Jackson'})
        assert entity.version == 1
        assert entity.properties == {'lastName': 'Jackson'}
        _, history = service.get_entity_history(john)
        assert history[0].version == 0
        assert history[0].properties == {}

    def test_merge_scenario(self, service, extractor, graph):
        extractor.script('John Doe works at Google',
                         extraction(entities=[('John Doe', 'person'), ('Google', 'organization')],
                                    relationships=[('John Doe', 'Google', 'WORKS_AT')]))
        extractor.script('Lunch with John', extraction(entities=[('John', 'person')]))
        service.remember('John Doe works at Google')
        service.remember('Lunch with John')

        john = graph.find_entity_by_key('john', 'person')
        john_doe = graph.find_entity_by_key('john doe', 'person')
        google = graph.find_entity_by_key('google', 'organization')
        before = graph.mention_count(john.id) + graph.mention_count(john_doe.id)

        keep = service.merge_entities(john.id, john_doe.id)

        assert 'John Doe' in keep.aliases
        assert graph.get_relationship(john.id, google.id, 'WORKS_AT') is not None
        assert graph.get_entity(john_doe.id) is None
        assert graph.mention_count(john.id) == before
        with pytest.raises(NotFoundError):
            service.merge_entities(john.id, john_doe.id)

    def test_list_and_merge_candidates(self, service, disambiguator):
        service.entities.upsert('Jonathan', 'person')
        service.entities.upsert('Jonathon', 'person')
        disambiguator.verdict = DisambiguationVerdict(selected_index=1, confidence='high', reasoning='same person')

        assert len(service.list_entities()) == 2
        assert len(service.find_merge_candidates()) == 1


class TestRecallAndAnswer:

    @pytest.fixture
    def memories(self, service):
        return [
            service.remember('coffee with Sarah downtown'),
            service.remember('hiking trip in the mountains'),
            service.remember('finished reading a novel'),
        ]

    def test_recall_ranks_best_match_first(self, service, memories):
        results = service.recall('coffee', k=2, use_graph_expansion=False)
        assert results[0].id == memories[0]
        assert len(results) == 2

    def test_recall_with_graph_expansion(self, service, memories):
        results = service.recall('mountains hiking', k=3)
        assert results[0].id == memories[1]

    def test_question_embeddings_widen_recall(self, service, extractor):
        extractor.script('Dinner at Luigi', extraction(questions=['italian restaurant pasta']))
        memory_id = service.remember('Dinner at Luigi')
        service.remember('bought new shoes')

        assert service.recall('italian pasta', k=1, use_graph_expansion=False)[0].id == memory_id

    def test_answer_returns_used_sources(self, service, answerer, memories):
        answerer.used = [1, 9]
        text, sources = service.answer('where did I have coffee?', k=3)
        assert text == 'answer to where did I have coffee?'
        assert [m.id for m in sources] == [memories[0]]
        question, passed, _ = answerer.calls[0]
        assert len(passed) == 3

    def test_recall_rejects_empty_query(self, service):
        with pytest.raises(ValidationError):
            service.recall('')


class TestTodos:

    def test_single_open_todo_is_marked_done(self, service, extractor, disambiguator):
        extractor.script('Buy milk at the store', extraction(memory_type='todo'))
        todo_id = service.remember('Buy milk at the store')
        service.remember('went for a run')

        assert service.mark_todo_done('buy milk', 'got oat milk') == todo_id

        todo = service.memories.get_memory(todo_id)
        assert todo.status == 'done'
        assert todo.resolution_summary == 'got oat milk'
        assert todo.resolved_at is not None
        assert disambiguator.todo_calls == []
        assert service.list_open_todos() == []

    def test_several_open_todos_are_disambiguated(self, service, extractor, disambiguator):
        extractor.script('Buy milk at the store', extraction(memory_type='todo'))
        extractor.script('Call the dentist', extraction(memory_type='todo'))
        milk = service.remember('Buy milk at the store')
        dentist = service.remember('Call the dentist')

        assert service.mark_todo_done('buy milk') == milk
        query, todos = disambiguator.todo_calls[0]
        assert [t.id for t in todos] == [milk, dentist]
        assert [t.id for t in service.list_open_todos()] == [dentist]

    def test_no_open_todo(self, service):
        service.remember('went for a run')
        with pytest.raises(NotFoundError):
            service.mark_todo_done('buy milk')


class TestExportImport:

    def test_export_format(self, service, tmp_path):
        service.remember('first note')
        service.remember('second note')
        path = tmp_path / 'export.json'

        assert service.export_memories(str(path)) == 2

        data = json.loads(path.read_text(encoding='utf-8'))
        assert data['version'] == '2.0'
        assert data['count'] == 2
        assert data['memories'] == ['first note', 'second note']
        assert 'exportDate' in data

    def test_import_accepts_strings_and_objects(self, service, tmp_path):
        path = tmp_path / 'import.json'
        path.write_text(json.dumps({
            'memories': ['plain note', {
                'originalText': 'old format note'
            }, {
                'content': 'content note'
            }, {
                'other': 'ignored'
            }]
        }), encoding='utf-8')

        assert service.import_memories(str(path)) == 3
        assert len(service.list_recent(10)) == 3
