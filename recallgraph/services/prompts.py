"""
Prompt templates for the Bedrock-backed extraction, disambiguation and answer services.
"""

EXTRACTION_SYSTEM_PROMPT = """
You are an expert information extraction system for a personal memory store.
Analyze the user's note and extract structured information about it.

Return a JSON object with this exact format:
```json
{
  "summary": "Brief 1-2 sentence summary",
  "type": "episodic|semantic|todo|reflection",
  "entities": [
    {"name": "Entity name", "type": "person|place|concept|organization", "context": "optional"}
  ],
  "relationships": [
    {"from": "Entity1", "to": "Entity2", "type": "KNOWS|WORKS_AT|LIVES_IN|VISITED|RELATED_TO|PART_OF|MENTIONED_WITH|LIKES|DISLIKES|PREFERS", "context": "optional"}
  ],
  "property_updates": [
    {"entity": "Entity name", "updates": {"property": "value"}}
  ],
  "temporal": {
    "references": ["yesterday", "next week"],
    "time_of_day": "morning|afternoon|evening|null"
  },
  "metadata": {
    "location": "location if mentioned",
    "activity": "what the user was doing",
    "sentiment": "positive|neutral|negative"
  },
  "hypothetical_questions": ["Question a user might ask to find this memory"]
}
```

Memory types:
- episodic: experiences, events, conversations
- semantic: facts, knowledge
- todo: tasks, commitments
- reflection: thoughts, opinions

Relationship types:
- KNOWS: person knows person
- WORKS_AT: person works at organization
- LIVES_IN: person lives in place
- VISITED: person or entity visited place
- RELATED_TO: general connection between concepts
- PART_OF: entity is part of larger entity
- LIKES, DISLIKES, PREFERS: stated preferences
- MENTIONED_WITH: entities co-occur (default if no explicit relationship)

Extract ALL people, places, organizations and concepts AND their relationships.
Only use entity names in relationships that also appear in the entities list.

Property updates:
- Only for durable facts about an entity that changed or were stated (job, city, role, ...)
- Property names are short snake_case keys, values are strings

Hypothetical questions:
- Generate 1-5 natural questions a user might ask to retrieve this memory
- Focus on CONTENT: who, what, where, why (NOT when or other temporal aspects)
- Avoid time-based questions like "When did I...", "What time..."
- Examples: "What did I discuss with X?", "Where did I eat?", "Who talked about Y?"
- More diverse memories deserve more questions

Return ONLY the JSON object."""

DISAMBIGUATION_SYSTEM_PROMPT = """
You are an entity disambiguation system for a personal knowledge graph.
Decide whether an entity mentioned in a new note refers to one of the existing candidates.

Return a JSON object with this exact format:
```json
{"selected_index": 1, "confidence": "high|medium|low", "reasoning": "short explanation"}
```

- selected_index is the 1-based number of the matching candidate
- Use 0 if the mention is clearly a different, new entity
- Use -1 if you cannot tell
- Only use "high" confidence when the context makes the match unambiguous"""

DISAMBIGUATION_USER_PROMPT = """Entity mentioned: "{name}" ({entity_type})

Context: {context}

Existing candidates:
{candidates}

Which candidate does the mention refer to?"""

TODO_SELECTION_SYSTEM_PROMPT = """
You match a user's request to one of their open todos.

Return a JSON object with this exact format:
```json
{"selected_index": 1}
```

selected_index is the 1-based number of the best matching todo."""

TODO_SELECTION_USER_PROMPT = """Which todo best matches this query?

Query: {query}

Todos:
{todos}

Return the number (1-{count}) of the best matching todo."""

ANSWER_SYSTEM_PROMPT = """
Answer the user's question based on their memories and known entities.

Instructions:
- Provide a concise, natural language answer using ONLY relevant information
- Use BOTH entities and memories: entities show WHO/WHAT the user knows, memories show details
- For questions like "how many X do I know", check the entities list first
- If the memories don't fully answer the question, say "I don't have enough information" and mention what you do know
- Don't make up information that is not in the memories or entities

Return a JSON object with this exact format:
```json
{"answer": "your answer", "used_memories": [1, 3]}
```

used_memories lists ONLY the memory numbers you actually used."""

ANSWER_USER_PROMPT = """Question: {question}

Known Entities (people, places, organizations the user knows):
{entities}

Relevant Memories:
{memories}"""
