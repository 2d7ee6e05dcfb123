"""
MCP Interface Layer using fastmcp for agent access to the memory store.
"""
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from recallgraph.models.core import EntityCandidate, Memory
from recallgraph.models.errors import AmbiguousResolutionError, RecallGraphError
from recallgraph.services.memory_management import MemoryManagementService
from recallgraph.utils.config import config
from recallgraph.utils.health_check import get_system_info
from recallgraph.utils.logging_config import get_logger
from recallgraph.utils.timestamp_utils import to_iso

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('RecallGraph')
_memory_service: Optional[MemoryManagementService] = None


def get_memory_service() -> MemoryManagementService:
    global _memory_service
    if _memory_service is None:
        _memory_service = MemoryManagementService()
    return _memory_service


def _memory_dict(memory: Memory) -> Dict[str, Any]:
    data = {
        'id': memory.id,
        'summary': memory.summary,
        'content': memory.content,
        'type': memory.type,
        'timestamp': to_iso(memory.timestamp)
    }
    if memory.status:
        data['status'] = memory.status
    return data


def _candidate_dict(candidate: EntityCandidate) -> Dict[str, Any]:
    return {
        'id': candidate.entity.id,
        'name': candidate.entity.name,
        'type': candidate.entity.type,
        'aliases': candidate.entity.aliases,
        'score': round(candidate.score, 3),
        'memory_count': candidate.memory_count
    }


def _fail(tool: str, e: Exception):
    logger.error(f'Error in MCP {tool}: {e}')
    raise Exception(f'{tool} failed: {e}')


@mcp.tool()
def remember(text: str, resolutions: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Store a note in memory.

    Args:
        text: The note to remember
        resolutions: Entity name to entity id, for entities that need manual disambiguation

    Returns:
        {'memory_id': ...} or, when an entity is ambiguous, the candidates to choose from
    """
    try:
        return {'memory_id': get_memory_service().remember(text, resolutions)}
    except AmbiguousResolutionError as e:
        logger.info(f'MCP remember needs disambiguation: {e}')
        return {
            'needs_disambiguation': {
                'name': e.name,
                'type': e.entity_type,
                'candidates': [_candidate_dict(c) for c in e.candidates]
            }
        }
    except RecallGraphError as e:
        _fail('remember', e)


@mcp.tool()
def recall_memories(query: str, k: int = 5, use_graph_expansion: bool = True) -> List[Dict[str, Any]]:
    """Search memories relevant to a query.

    Args:
        query: Natural language query
        k: Maximum number of results to return (default: 5)
        use_graph_expansion: Also return memories connected through shared entities

    Returns:
        List of memories, best first
    """
    if not query or not query.strip():
        return []
    try:
        memories = get_memory_service().recall(query, k, use_graph_expansion)
        logger.debug(f'MCP recall returned {len(memories)} memories')
        return [_memory_dict(m) for m in memories]
    except RecallGraphError as e:
        _fail('recall_memories', e)


@mcp.tool()
def answer_question(question: str, k: int = 5) -> Dict[str, Any]:
    """Answer a question from memory.

    Returns:
        {'answer': ..., 'sources': [memories used]}
    """
    try:
        text, sources = get_memory_service().answer(question, k)
        return {'answer': text, 'sources': [_memory_dict(m) for m in sources]}
    except RecallGraphError as e:
        _fail('answer_question', e)


@mcp.tool()
def mark_todo_done(query: str, resolution_summary: Optional[str] = None) -> Dict[str, Any]:
    """Mark the open todo matching a description as done."""
    try:
        memory_id = get_memory_service().mark_todo_done(query, resolution_summary)
        return {'memory_id': memory_id, 'status': 'done'}
    except RecallGraphError as e:
        _fail('mark_todo_done', e)


@mcp.tool()
def list_open_todos() -> List[Dict[str, Any]]:
    """List open todos, newest first."""
    try:
        return [_memory_dict(m) for m in get_memory_service().list_open_todos()]
    except RecallGraphError as e:
        _fail('list_open_todos', e)


@mcp.tool()
def find_similar_entities(name: str, entity_type: Optional[str] = None) -> List[Dict[str, Any]]:
    """Find existing entities that a name may refer to."""
    try:
        return [_candidate_dict(c) for c in get_memory_service().find_similar_entities(name, entity_type)]
    except RecallGraphError as e:
        _fail('find_similar_entities', e)


@mcp.tool()
def merge_entities(keep_id: str, remove_id: str) -> Dict[str, Any]:
    """Merge two entities that name the same thing, keeping keep_id."""
    try:
        entity = get_memory_service().merge_entities(keep_id, remove_id)
        return {'id': entity.id, 'name': entity.name, 'aliases': entity.aliases}
    except RecallGraphError as e:
        _fail('merge_entities', e)


@mcp.tool()
def get_entity_history(entity_id: str, limit: int = 10) -> Dict[str, Any]:
    """Show an entity's current properties and previous versions."""
    try:
        entity, versions = get_memory_service().get_entity_history(entity_id, limit)
        return {
            'id': entity.id,
            'name': entity.name,
            'version': entity.version,
            'properties': entity.properties,
            'history': [{
                'version': v.version,
                'name': v.name,
                'properties': v.properties,
                'created_at': to_iso(v.created_at)
            } for v in versions]
        }
    except RecallGraphError as e:
        _fail('get_entity_history', e)


@mcp.tool()
def update_entity_properties(entity_id: str, updates: Dict[str, str], expected_version: Optional[int] = None) -> Dict[str, Any]:
    """Update properties of an entity, keeping the previous values in its history."""
    try:
        entity = get_memory_service().update_entity_properties(entity_id, updates, expected_version)
        return {'id': entity.id, 'version': entity.version, 'properties': entity.properties}
    except RecallGraphError as e:
        _fail('update_entity_properties', e)


@mcp.tool()
def system_health() -> Dict[str, Any]:
    """Report configuration and the health of Bedrock and the graph store."""
    return get_system_info()


if __name__ == '__main__':
    if config.mcp.transport == 'stdio':
        mcp.run(transport='stdio')
    else:
        mcp.run(transport=config.mcp.transport, host=config.mcp.host, port=config.mcp.port)
