"""Tests for the Cypher query builder and identifier validation."""

import pytest

from hybridmem.utils.cypher import cypher, format_labels, validate_label, validate_relationship_type
from hybridmem.utils.errors import InvalidInputError


class TestBuilder:

    def test_clauses_and_parameters(self):
        query = cypher()\
            .match('(m:Memory)', {'unused': None})\
            .where('m.threadId = $threadId', {'threadId': 't1'})\
            .and_where('m.importance >= $minImportance', {'minImportance': 0.5})\
            .return_('m.id AS id')\
            .order_by('m.importance', 'desc')\
            .order_by('m.createdAt', 'DESC')\
            .limit(10)\
            .build()

        assert query.text.split('\n') == [
            'MATCH (m:Memory)',
            'WHERE m.threadId = $threadId AND m.importance >= $minImportance',
            'RETURN m.id AS id',
            'ORDER BY m.importance DESC, m.createdAt DESC',
            'LIMIT 10',
        ]
        assert query.parameters == {'unused': None, 'threadId': 't1', 'minImportance': 0.5}

    def test_and_where_without_where_starts_one(self):
        text = str(cypher().match('(m)').and_where('m.id = $id'))
        assert text == 'MATCH (m)\nWHERE m.id = $id'

    def test_with_unwind_and_delete(self):
        text = cypher()\
            .unwind('$ids', 'memoryId')\
            .match('(m:Memory {id: memoryId})')\
            .with_(['m', 'memoryId'])\
            .detach_delete('m')\
            .build().text

        assert text == 'UNWIND $ids AS memoryId\nMATCH (m:Memory {id: memoryId})\nWITH m, memoryId\nDETACH DELETE m'

    def test_invalid_sort_direction(self):
        with pytest.raises(InvalidInputError):
            cypher().order_by('m.id', 'sideways')

    def test_limit_is_coerced_to_int(self):
        assert cypher().limit('5').build().text == 'LIMIT 5'

    def test_built_parameters_are_a_copy(self):
        builder = cypher().add_parameter('a', 1)
        query = builder.build()
        builder.add_parameter('b', 2)
        assert query.parameters == {'a': 1}


class TestIdentifiers:

    @pytest.mark.parametrize('value', ['FOLLOWED_BY', 'HAS_MEMORY', '_PRIVATE', 'R2'])
    def test_valid_relationship_types(self, value):
        assert validate_relationship_type(value) == value

    @pytest.mark.parametrize('value', ['followed_by', 'FOLLOWED BY', 'X]->(n) DELETE n //', '', None, '2FAST'])
    def test_invalid_relationship_types(self, value):
        with pytest.raises(InvalidInputError):
            validate_relationship_type(value)

    def test_labels(self):
        assert format_labels(['Memory', 'Fact']) == ':Memory:Fact'
        assert format_labels([]) == ''
        with pytest.raises(InvalidInputError):
            validate_label('Memory`) DETACH DELETE (n')
