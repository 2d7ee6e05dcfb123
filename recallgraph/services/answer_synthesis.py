"""
Answer questions from retrieved memories and the entities they mention.
"""

from typing import List, Optional, Tuple

from ..models.core import EntityCandidate, Memory
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import config
from ..utils.logging_config import get_logger
from .prompts import ANSWER_SYSTEM_PROMPT, ANSWER_USER_PROMPT

logger = get_logger(__name__)

NO_MEMORIES_ANSWER = "I don't have enough information to answer that."


class AnswerSynthesisService:
    """Bedrock-backed answer synthesizer."""

    def __init__(self, llm: Optional[BedrockLLM] = None, temperature: float = 0.5):
        self.llm = llm or BedrockLLM(config.bedrock_llm)
        self.temperature = temperature

    def synthesize(self, question: str, memories: List[Memory],
                   entities: List[EntityCandidate]) -> Tuple[str, List[int]]:
        """Answer a question from memories.

        Args:
            question: The user's question
            memories: Retrieved memories, numbered from 1 in the prompt
            entities: Entities mentioned by those memories

        Returns:
            Tuple of (answer, 1-based indexes of the memories used)
        """
        if not memories:
            return NO_MEMORIES_ANSWER, []

        if entities:
            entity_lines = []
            for candidate in entities:
                entity = candidate.entity
                aliases = f" [aliases: {', '.join(entity.aliases)}]" if entity.aliases else ''
                entity_lines.append(f'- {entity.name} ({entity.type}){aliases} - {candidate.memory_count} memories')
            entities_text = '\n'.join(entity_lines)
        else:
            entities_text = 'No entities found.'

        memories_text = '\n\n'.join(f'Memory {i}:\nSummary: {m.summary}\nContent: {m.content}\nType: {m.type}'
                                    for i, m in enumerate(memories, start=1))

        data = self.llm.generate_json(prompt=ANSWER_USER_PROMPT.format(question=question,
                                                                       entities=entities_text,
                                                                       memories=memories_text),
                                      system_prompt=ANSWER_SYSTEM_PROMPT,
                                      temperature=self.temperature)

        used = []
        for value in data.get('used_memories') or []:
            if isinstance(value, int) and 1 <= value <= len(memories) and value not in used:
                used.append(value)

        answer = str(data.get('answer') or NO_MEMORIES_ANSWER)
        logger.debug(f'Synthesized answer from {len(used)} of {len(memories)} memories')
        return answer, used
