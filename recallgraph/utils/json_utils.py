"""
JSON utilities for cleaning and decoding LLM responses.
"""

import json
from typing import Any, Dict


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def parse_json_object(response: str) -> Dict[str, Any]:
    """Decode the first JSON object found in an LLM response.

    Models sometimes wrap the object in prose; everything outside the outermost
    braces is discarded.

    Args:
        response: Raw LLM response

    Returns:
        Decoded dictionary

    Raises:
        json.JSONDecodeError: If no JSON object can be decoded
        ValueError: If the decoded value is not an object
    """
    cleaned = clean_json_response(response)
    start = cleaned.find('{')
    end = cleaned.rfind('}')
    if start != -1 and end > start:
        cleaned = cleaned[start:end + 1]

    data = json.loads(cleaned)
    if not isinstance(data, dict):
        raise ValueError(f'Expected JSON object, got {type(data).__name__}')
    return data
