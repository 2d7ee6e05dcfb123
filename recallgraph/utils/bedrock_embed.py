"""
Amazon Bedrock embedding client wrapper with retry logic and error handling.
"""

import json
from typing import List

import boto3

from ..models.errors import RecallGraphError
from .config import BedrockEmbedConfig
from .logging_config import get_logger
from .retry import retry_transient

logger = get_logger(__name__)


class BedrockEmbedError(RecallGraphError):
    """Custom exception for Bedrock embedding errors."""
    pass


class BedrockEmbed:
    """Amazon Bedrock embedding client with retry logic and error handling."""

    def __init__(self, config: BedrockEmbedConfig, client=None):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
            client: Pre-built bedrock-runtime client (optional)
        """
        self.config = config
        self.model_id = config.model_id
        self.output_embedding_length = config.dimension

        self.bedrock = client or boto3.client(service_name='bedrock-runtime', region_name=config.region)

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    @retry_transient('Bedrock Embed')
    def _call_with_retry(self, data: dict) -> dict:
        """
        Make a Bedrock API call, retrying once on transient failures.

        Args:
            data: Request data dictionary

        Returns:
            Response dictionary from Bedrock API
        """
        response = self.bedrock.invoke_model(body=json.dumps(data),
                                             modelId=self.model_id,
                                             accept='application/json',
                                             contentType='application/json')
        return json.loads(response.get('body').read())

    def _request_body(self, text: str, input_type: str) -> dict:
        model = self.model_id.lower()
        if 'titan-embed-text-v1' in model:
            # v1 has a fixed 1536-d output and rejects the dimensions field
            return {'inputText': text}
        if 'titan' in model:
            return {'inputText': text, 'dimensions': self.output_embedding_length}
        if 'cohere' in model:
            if self.output_embedding_length != 1024:
                raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.output_embedding_length}')
            return {'input_type': input_type, 'texts': [text]}
        raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')

    def _embed(self, text: str, input_type: str) -> List[float]:
        if not text or not text.strip():
            logger.warning(f'Empty text provided for {input_type} embedding')
            return [0.0] * self.output_embedding_length

        try:
            response = self._call_with_retry(self._request_body(text, input_type))
            if 'cohere' in self.model_id.lower():
                embeddings = response.get('embeddings') or []
                embedding = embeddings[0] if embeddings else []
            else:
                embedding = response.get('embedding') or []

            if len(embedding) != self.output_embedding_length:
                raise BedrockEmbedError(f'Expected {self.output_embedding_length}-d embedding, got {len(embedding)}')
            return embedding

        except RecallGraphError:
            raise
        except Exception as e:
            logger.error(f'Error generating {input_type} embedding: {e}')
            raise BedrockEmbedError(f'Embedding failed: {e}')

    def embed_document(self, text: str) -> List[float]:
        """
        Generate embeddings for stored text (memory content, hypothetical questions).

        Args:
            text: Text to embed

        Returns:
            List of embedding values

        Raises:
            BedrockEmbedError: If embedding generation fails
        """
        return self._embed(text, 'search_document')

    def embed_query(self, text: str) -> List[float]:
        """
        Generate embeddings for query text.

        Args:
            text: Query text to embed

        Returns:
            List of embedding values

        Raises:
            BedrockEmbedError: If embedding generation fails
        """
        return self._embed(text, 'search_query')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_embedding = self.embed_document('test')
            return len(test_embedding) == self.output_embedding_length

        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
