"""
OpenSearch client wrapper for the memory/question vector indexes and the entity fuzzy index.
"""

import time
from typing import Any, Dict, List, Optional, Tuple

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.core import Entity, HypotheticalQuestion, Memory
from ..models.errors import IndexUnavailableError, RecallGraphError
from .config import OpenSearchConfig
from .logging_config import get_logger
from .timestamp_utils import to_iso

logger = get_logger(__name__)

INDEX_TYPES = ('memory', 'question', 'entity')
FUZZY_SCORE_CEILING = 0.9


class OpenSearchError(RecallGraphError):
    """Custom exception for OpenSearch errors."""
    pass


def _is_missing_index(error: OpenSearchException) -> bool:
    return isinstance(error, NotFoundError) or 'index_not_found_exception' in str(error)


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig, client: Optional[OpenSearch] = None):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Pre-built OpenSearch client (optional)
        """
        self.config = config

        if client is None:
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service='es', refreshable_credentials=credentials)
            endpoint = config.endpoint
            if '://' in endpoint:
                endpoint = endpoint.split('://', 1)[1]

            client = OpenSearch(hosts=[{
                'host': endpoint,
                'port': config.port
            }],
                                http_auth=auth,
                                use_ssl=True,
                                verify_certs=True,
                                connection_class=RequestsHttpConnection)
        self.client = client

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def index_name(self, index_type: str) -> str:
        return f'{self.config.index_prefix}_{index_type}'

    def _vector_field(self) -> Dict[str, Any]:
        return {
            'type': 'knn_vector',
            'dimension': self.config.dimension,
            'method': {
                'name': 'hnsw',
                'space_type': 'cosinesimil',
                'engine': 'nmslib'
            }
        }

    def _index_body(self, index_type: str) -> Dict[str, Any]:
        if index_type == 'memory':
            properties = {
                'memory_id': {
                    'type': 'keyword'
                },
                'embedding': self._vector_field(),
                'created_at': {
                    'type': 'date'
                }
            }
        elif index_type == 'question':
            properties = {
                'memory_id': {
                    'type': 'keyword'
                },
                'question': {
                    'type': 'text'
                },
                'embedding': self._vector_field()
            }
        else:  # entity index
            properties = {
                'entity_id': {
                    'type': 'keyword'
                },
                'name': {
                    'type': 'text'
                },
                'aliases': {
                    'type': 'text'
                },
                'type': {
                    'type': 'keyword'
                }
            }
            return {'mappings': {'properties': properties}}

        return {'mappings': {'properties': properties}, 'settings': {'index': {'knn': True, 'knn.algo_param.ef_search': 100}}}

    def create_index_if_not_exists(self, index_type: str, wait_seconds: float = 15) -> str:
        """
        Create index if it doesn't exist.

        Args:
            index_type: One of memory, question or entity
            wait_seconds: Time to wait for the new index to become searchable

        Returns:
            'exists', 'created' or 'failed'
        """
        index_name = self.index_name(index_type)

        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            response = self.client.indices.create(index=index_name, body=self._index_body(index_type))
            logger.info(f'Created index {index_name}')
            if response.get('acknowledged', False):
                if wait_seconds:
                    logger.info(f'Waiting {wait_seconds}s for index {index_name} sync-up...')
                    time.sleep(wait_seconds)
                return 'created'
            else:
                return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')

    def create_indexes(self) -> None:
        for index_type in INDEX_TYPES:
            self.create_index_if_not_exists(index_type)

    def _index(self, index_type: str, doc_id: str, document: Dict[str, Any]) -> bool:
        index_name = self.index_name(index_type)
        try:
            response = self.client.index(index=index_name, id=doc_id, body=document)

            success = response.get('result') in ['created', 'updated']
            if success:
                logger.debug(f'Indexed document {doc_id} in {index_name}')
            else:
                logger.warning(f'Unexpected result indexing document: {response}')

            return success

        except OpenSearchException as e:
            logger.error(f'Error indexing document: {e}')
            raise OpenSearchError(f'Failed to index document: {e}')

    def index_memory(self, memory: Memory) -> bool:
        if not memory.embedding:
            logger.debug(f'Memory {memory.id} has no embedding, not indexed')
            return False
        return self._index('memory', memory.id, {
            'memory_id': memory.id,
            'embedding': memory.embedding,
            'created_at': to_iso(memory.timestamp)
        })

    def index_question(self, question: HypotheticalQuestion) -> bool:
        return self._index('question', question.id, {
            'memory_id': question.memory_id,
            'question': question.question,
            'embedding': question.embedding
        })

    def index_entity(self, entity: Entity) -> bool:
        return self._index('entity', entity.id, {
            'entity_id': entity.id,
            'name': entity.name,
            'aliases': list(entity.aliases),
            'type': entity.type
        })

    def delete_entity(self, entity_id: str) -> bool:
        index_name = self.index_name('entity')
        try:
            response = self.client.delete(index=index_name, id=entity_id)
            return response.get('result') == 'deleted'
        except OpenSearchException as e:
            if len(e.args) >= 2 and (e.args[0] == 404 or e.args[1] == 'not_found'):
                logger.warning(f'Entity document {entity_id} not found for deletion')
                return False
            logger.error(f'Error deleting entity document {entity_id}: {e}')
            raise OpenSearchError(f'Failed to delete document: {e}')

    def _search(self, index_type: str, body: Dict[str, Any]) -> List[Dict[str, Any]]:
        index_name = self.index_name(index_type)
        try:
            response = self.client.search(index=index_name, body=body)
        except OpenSearchException as e:
            if _is_missing_index(e):
                raise IndexUnavailableError(index_name)
            logger.error(f'Error searching {index_name}: {e}')
            raise OpenSearchError(f'Search failed: {e}')

        return [{'id': hit['_id'], 'score': hit['_score'], 'document': hit['_source']} for hit in response['hits']['hits']]

    def vector_search(self, index_type: str, query_vector: List[float], top_k: int) -> List[Tuple[str, float]]:
        """
        Perform vector similarity search.

        Args:
            index_type: memory or question
            query_vector: Query vector for similarity search
            top_k: Number of results to return

        Returns:
            List of (memory_id, score), best first

        Raises:
            IndexUnavailableError: If the index has not been created
        """
        body = {
            'size': top_k,
            'query': {
                'knn': {
                    'embedding': {
                        'vector': query_vector,
                        'k': top_k
                    }
                }
            },
            '_source': {
                'excludes': ['embedding']
            }
        }
        results = self._search(index_type, body)
        logger.debug(f'Vector search on {index_type} returned {len(results)} results')
        return [(r['document'].get('memory_id', r['id']), float(r['score'])) for r in results]

    def fuzzy_search_entities(self, term: str, entity_type: Optional[str], top_k: int) -> List[Tuple[str, float]]:
        """
        Fuzzy token search over entity names and aliases.

        Relevance scores are rescaled so the best hit gets FUZZY_SCORE_CEILING; an exact
        normalized match is established separately and is the only way to reach 1.0.

        Args:
            term: Single word to match
            entity_type: Restrict to this entity type (optional)
            top_k: Number of results to return

        Returns:
            List of (entity_id, score), best first

        Raises:
            IndexUnavailableError: If the index has not been created
        """
        query: Dict[str, Any] = {
            'bool': {
                'must': [{
                    'multi_match': {
                        'query': term,
                        'fields': ['name', 'aliases'],
                        'fuzziness': 'AUTO'
                    }
                }]
            }
        }
        if entity_type:
            query['bool']['filter'] = [{'term': {'type': entity_type}}]

        results = self._search('entity', {'size': top_k, 'query': query})
        if not results:
            return []

        best = max(r['score'] for r in results) or 1.0
        return [(r['document'].get('entity_id', r['id']), FUZZY_SCORE_CEILING * float(r['score']) / best) for r in results]

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.index_name('memory'))
            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
