"""
Error taxonomy shared by the stores, the retrieval engine and the service clients.
"""

from typing import List, Optional


class RecallGraphError(Exception):
    """Base class for all errors raised by this package."""
    pass


class NotFoundError(RecallGraphError):
    """An unknown memory or entity id was passed to an operation."""

    def __init__(self, kind: str, identifier: str, message: Optional[str] = None):
        self.kind = kind
        self.identifier = identifier
        super().__init__(message or f'{kind.capitalize()} {identifier} not found')


class AmbiguousResolutionError(RecallGraphError):
    """Entity disambiguation was inconclusive; the caller must choose a candidate."""

    def __init__(self, name: str, entity_type: str, candidates: List):
        self.name = name
        self.entity_type = entity_type
        self.candidates = candidates
        options = ', '.join(f'{c.entity.name} ({c.entity.id})' for c in candidates)
        super().__init__(f"Ambiguous {entity_type} '{name}': candidates are {options}")


class IndexUnavailableError(RecallGraphError):
    """A vector or fuzzy index has not been built yet."""

    def __init__(self, index_name: str):
        self.index_name = index_name
        super().__init__(f'Index {index_name} is not available')


class UpstreamTransientError(RecallGraphError):
    """An oracle or substrate call kept failing with a server-side error."""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f'{service}: {message}')


class ValidationError(RecallGraphError):
    """Input rejected before any store mutation."""
    pass


class ConflictError(RecallGraphError):
    """An entity changed since the caller read it."""

    def __init__(self, entity_id: str, expected: int, actual: int):
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        super().__init__(f'Entity {entity_id} is at version {actual}, expected {expected}')
