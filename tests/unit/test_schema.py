from __future__ import annotations

import pytest

from tdcloud_client.exceptions import SchemaParseError, ValidationError
from tdcloud_client.models import Table
from tdcloud_client.schema import ArrayType, Column, PrimitiveType, TableSchema, parse_type


def test_parse_primitive_and_nested_types():
    assert parse_type("string") is PrimitiveType.STRING
    assert parse_type("array<long>") == ArrayType(PrimitiveType.LONG)
    assert parse_type("array<array<double>>") == ArrayType(ArrayType(PrimitiveType.DOUBLE))


def test_schema_strings_survive_parse_and_render():
    strings = ["name:string", "age:int", "score:double", "tags:array<string>", "ids:array<array<long>>"]
    schema = TableSchema.parse(strings)
    assert schema.to_strings() == strings
    assert len(schema) == 5


def test_unknown_type_is_rejected_with_position():
    with pytest.raises(SchemaParseError) as ei:
        TableSchema.parse(["col:bogus"])
    assert ei.value.position == 0
    assert "bogus" in str(ei.value)
    assert isinstance(ei.value, ValidationError)


@pytest.mark.parametrize("text", ["array<int", "array<>", "int>", "array<int>x", "", "array"])
def test_malformed_types(text):
    with pytest.raises(SchemaParseError):
        parse_type(text)


def test_column_requires_name_and_separator():
    with pytest.raises(SchemaParseError):
        Column.parse("justaname")
    with pytest.raises(SchemaParseError):
        Column.parse(":int")


def test_table_model_decodes_json_schema_string():
    table = Table.model_validate({"name": "t", "schema": '[["a","int"],["b","array<string>"]]'})
    assert table.table_schema().to_pairs() == [["a", "int"], ["b", "array<string>"]]
