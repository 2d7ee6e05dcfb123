"""
Amazon Bedrock LLM client wrapper with retry logic and error handling.
"""

import json
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig

from ..models.errors import RecallGraphError
from .config import BedrockLLMConfig
from .json_utils import parse_json_object
from .logging_config import get_logger
from .retry import retry_transient

logger = get_logger(__name__)


class BedrockLLMError(RecallGraphError):
    """Custom exception for Bedrock LLM errors."""
    pass


class BedrockLLM:
    """Amazon Bedrock LLM client with retry logic and error handling."""

    def __init__(self, config: BedrockLLMConfig, client=None):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
            client: Pre-built bedrock-runtime client (optional)
        """
        self.config = config
        self.model_id = config.model_id

        self.bedrock_runtime = client or boto3.client(
            'bedrock-runtime',
            region_name=config.region,
            config=BotoConfig(
                connect_timeout=600,
                read_timeout=600,
                retries={'max_attempts': 0}  # We handle retries manually
            ))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    @retry_transient('Bedrock LLM')
    def _converse(self, messages: List[Dict[str, Any]], system: List[Dict[str, str]],
                  inf_params: Dict[str, Any]) -> Tuple[str, Optional[Dict[str, Any]]]:
        stream = self.bedrock_runtime.converse_stream(modelId=self.model_id,
                                                      messages=messages,
                                                      system=system,
                                                      inferenceConfig=inf_params).get('stream')

        msg = ''
        invoke_metrics = None

        if stream:
            for event in stream:
                if 'contentBlockDelta' in event:
                    msg += event['contentBlockDelta']['delta']['text']
                if 'metadata' in event:
                    invoke_metrics = {**event['metadata']['usage'], **event['metadata']['metrics']}

        return msg, invoke_metrics

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: str,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None,
                          stop_sequences: Optional[List[str]] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Generate response using Bedrock LLM with retry logic.

        Args:
            messages: List of message dictionaries in Bedrock format
            system_prompt: System prompt for the conversation
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)
            stop_sequences: Stop sequences for generation

        Returns:
            Tuple of (response_text, invoke_metrics)

        Raises:
            UpstreamTransientError: If the service keeps failing with server-side errors
            BedrockLLMError: On any other failure
        """
        inf_params = {
            'maxTokens': max_tokens or self.config.max_tokens,
            'temperature': self.config.temperature if temperature is None else temperature,
            'stopSequences': stop_sequences or [],
        }

        try:
            msg, invoke_metrics = self._converse(messages, [{'text': system_prompt}], inf_params)
            logger.debug(f'Bedrock LLM response generated successfully (length: {len(msg)})')
            return msg, invoke_metrics
        except RecallGraphError:
            raise
        except Exception as e:
            logger.error(f'Unexpected error in Bedrock LLM: {e}')
            raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}')

    def generate_json(self, prompt: str, system_prompt: str, temperature: Optional[float] = None) -> Dict[str, Any]:
        """
        Ask the model for a single JSON object and decode it.

        The assistant turn is prefilled with a json code fence so the model answers with the object only.

        Args:
            prompt: User prompt
            system_prompt: System prompt
            temperature: Temperature for generation (uses config default if None)

        Returns:
            Decoded JSON object

        Raises:
            BedrockLLMError: If the response is not a JSON object
        """
        messages = [{'role': 'user', 'content': [{'text': prompt}]}, {'role': 'assistant', 'content': [{'text': '```json'}]}]
        response, _ = self.generate_response(messages=messages,
                                             system_prompt=system_prompt,
                                             temperature=temperature,
                                             stop_sequences=['```'])
        try:
            return parse_json_object(response)
        except (json.JSONDecodeError, ValueError) as e:
            logger.error(f'Failed to parse JSON from Bedrock LLM response: {e}')
            raise BedrockLLMError(f'Invalid JSON response: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_messages = [{'role': 'user', 'content': [{'text': 'Hi'}]}]
            response, _ = self.generate_response(messages=test_messages,
                                                 system_prompt="You are a helpful assistant. Respond with just 'OK'.",
                                                 max_tokens=10,
                                                 temperature=0.0)
            return len(response.strip()) > 0

        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
