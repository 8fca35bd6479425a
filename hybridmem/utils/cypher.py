"""
Cypher query builder with parameterized values and allow-listed identifiers.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

from .errors import InvalidInputError

RELATIONSHIP_TYPE_PATTERN = re.compile(r'^[A-Z_][A-Z0-9_]*$')
LABEL_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


@dataclass
class CypherQuery:
    """A Cypher statement and its parameters."""
    text: str
    parameters: Dict[str, Any] = field(default_factory=dict)


def validate_relationship_type(value: str) -> str:
    """Return the relationship type if it is a safe identifier.

    Raises:
        InvalidInputError: If the type does not match the allow-list
    """
    if not isinstance(value, str) or not RELATIONSHIP_TYPE_PATTERN.match(value):
        raise InvalidInputError(f'Invalid relationship type: {value!r}', operation='validate_relationship_type')
    return value


def validate_label(value: str) -> str:
    """Return the node label if it is a safe identifier.

    Raises:
        InvalidInputError: If the label does not match the allow-list
    """
    if not isinstance(value, str) or not LABEL_PATTERN.match(value):
        raise InvalidInputError(f'Invalid node label: {value!r}', operation='validate_label')
    return value


def format_labels(labels: Iterable[str]) -> str:
    """Render labels as ':A:B' after validation."""
    return ''.join(f':{validate_label(label)}' for label in labels)


class CypherBuilder:
    """Fluent builder that joins clauses line by line and collects parameters."""

    def __init__(self):
        self.parts: List[str] = []
        self.parameters: Dict[str, Any] = {}

    def _add(self, clause: str, params: Optional[Dict[str, Any]] = None) -> 'CypherBuilder':
        self.parts.append(clause)
        if params:
            self.parameters.update(params)
        return self

    def match(self, pattern: str, params: Optional[Dict[str, Any]] = None) -> 'CypherBuilder':
        return self._add(f'MATCH {pattern}', params)

    def optional_match(self, pattern: str, params: Optional[Dict[str, Any]] = None) -> 'CypherBuilder':
        return self._add(f'OPTIONAL MATCH {pattern}', params)

    def where(self, condition: str, params: Optional[Dict[str, Any]] = None) -> 'CypherBuilder':
        return self._add(f'WHERE {condition}', params)

    def and_where(self, condition: str, params: Optional[Dict[str, Any]] = None) -> 'CypherBuilder':
        if self.parts and self.parts[-1].startswith('WHERE'):
            self.parts[-1] = f'{self.parts[-1]} AND {condition}'
            if params:
                self.parameters.update(params)
            return self
        return self.where(condition, params)

    def merge(self, pattern: str, params: Optional[Dict[str, Any]] = None) -> 'CypherBuilder':
        return self._add(f'MERGE {pattern}', params)

    def set(self, expression: str, params: Optional[Dict[str, Any]] = None) -> 'CypherBuilder':
        return self._add(f'SET {expression}', params)

    def with_(self, variables: Union[str, List[str]]) -> 'CypherBuilder':
        if isinstance(variables, list):
            variables = ', '.join(variables)
        return self._add(f'WITH {variables}')

    def unwind(self, expression: str, alias: str) -> 'CypherBuilder':
        return self._add(f'UNWIND {expression} AS {alias}')

    def delete(self, variables: Union[str, List[str]]) -> 'CypherBuilder':
        if isinstance(variables, list):
            variables = ', '.join(variables)
        return self._add(f'DELETE {variables}')

    def detach_delete(self, variables: Union[str, List[str]]) -> 'CypherBuilder':
        if isinstance(variables, list):
            variables = ', '.join(variables)
        return self._add(f'DETACH DELETE {variables}')

    def order_by(self, expression: str, direction: Optional[str] = None) -> 'CypherBuilder':
        if direction is not None and direction.upper() not in ('ASC', 'DESC'):
            raise InvalidInputError(f'Invalid sort direction: {direction!r}', operation='order_by')
        if self.parts and self.parts[-1].startswith('ORDER BY'):
            self.parts[-1] = f"{self.parts[-1]}, {expression}{' ' + direction.upper() if direction else ''}"
            return self
        return self._add(f"ORDER BY {expression}{' ' + direction.upper() if direction else ''}")

    def limit(self, count: int) -> 'CypherBuilder':
        # Inlined as an int literal
        return self._add(f'LIMIT {int(count)}')

    def return_(self, expression: str) -> 'CypherBuilder':
        return self._add(f'RETURN {expression}')

    def raw(self, clause: str, params: Optional[Dict[str, Any]] = None) -> 'CypherBuilder':
        return self._add(clause, params)

    def add_parameter(self, name: str, value: Any) -> 'CypherBuilder':
        self.parameters[name] = value
        return self

    def build(self) -> CypherQuery:
        return CypherQuery('\n'.join(self.parts), dict(self.parameters))

    def __str__(self) -> str:
        return '\n'.join(self.parts)


def cypher() -> CypherBuilder:
    """Start a new query."""
    return CypherBuilder()
