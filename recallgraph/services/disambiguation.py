"""
LLM judgement calls: which existing entity a mention refers to, and which todo a request means.
"""

from typing import List, Optional

from ..models.core import CONFIDENCE_LEVELS, DisambiguationVerdict, EntityCandidate, Memory
from ..models.errors import RecallGraphError
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import config
from ..utils.logging_config import get_logger
from .prompts import (DISAMBIGUATION_SYSTEM_PROMPT, DISAMBIGUATION_USER_PROMPT, TODO_SELECTION_SYSTEM_PROMPT,
                      TODO_SELECTION_USER_PROMPT)

logger = get_logger(__name__)


class DisambiguationError(RecallGraphError):
    """Custom exception for disambiguation errors."""
    pass


def _as_int(value, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class DisambiguationService:
    """Bedrock-backed disambiguator."""

    def __init__(self, llm: Optional[BedrockLLM] = None, temperature: float = 0.2):
        self.llm = llm or BedrockLLM(config.bedrock_llm)
        self.temperature = temperature

        logger.info('Initialized DisambiguationService')

    def disambiguate(self, name: str, entity_type: str, context: str,
                     candidates: List[EntityCandidate]) -> DisambiguationVerdict:
        """Ask which candidate a mention refers to.

        Returns:
            Verdict with a 1-based selected_index, 0 for a new entity or -1 when unsure
        """
        lines = []
        for i, candidate in enumerate(candidates, start=1):
            entity = candidate.entity
            aliases = f" (aliases: {', '.join(entity.aliases)})" if entity.aliases else ''
            lines.append(f'{i}. {entity.name} ({entity.type}){aliases} - similarity: {round(candidate.score * 100)}%')

        prompt = DISAMBIGUATION_USER_PROMPT.format(name=name,
                                                   entity_type=entity_type,
                                                   context=context,
                                                   candidates='\n'.join(lines))
        data = self.llm.generate_json(prompt=prompt, system_prompt=DISAMBIGUATION_SYSTEM_PROMPT, temperature=self.temperature)

        confidence = str(data.get('confidence', 'low')).lower()
        verdict = DisambiguationVerdict(selected_index=_as_int(data.get('selected_index'), -1),
                                        confidence=confidence if confidence in CONFIDENCE_LEVELS else 'low',
                                        reasoning=str(data.get('reasoning', '')))
        logger.debug(f"Disambiguation for '{name}': index {verdict.selected_index} ({verdict.confidence})")
        return verdict

    def select_todo(self, query: str, todos: List[Memory]) -> int:
        """Pick the todo a request refers to.

        Returns:
            0-based index into todos

        Raises:
            DisambiguationError: If the model answers with a number outside the list
        """
        if not todos:
            raise DisambiguationError('No todos to choose from')

        listing = '\n'.join(f'{i}. {t.summary}\n   Content: {t.content}' for i, t in enumerate(todos, start=1))
        prompt = TODO_SELECTION_USER_PROMPT.format(query=query, todos=listing, count=len(todos))
        data = self.llm.generate_json(prompt=prompt, system_prompt=TODO_SELECTION_SYSTEM_PROMPT, temperature=self.temperature)

        index = _as_int(data.get('selected_index'), 0)
        if not 1 <= index <= len(todos):
            raise DisambiguationError(f'Todo selection {index} is out of range 1-{len(todos)}')
        return index - 1
