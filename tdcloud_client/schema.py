# tdcloud_client/schema.py
"""Table schema column types.

Grammar (whole input, no surrounding whitespace):

    column := name ":" type
    type   := primitive | "array" "<" type ">"
    primitive := "string" | "int" | "long" | "double"
"""
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Sequence, Union

from .exceptions import SchemaParseError


class PrimitiveType(str, Enum):
    STRING = "string"
    INT = "int"
    LONG = "long"
    DOUBLE = "double"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ArrayType:
    element: "ColumnType"

    def __str__(self) -> str:
        return f"array<{self.element}>"


ColumnType = Union[PrimitiveType, ArrayType]


class _TypeParser:
    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def parse(self) -> ColumnType:
        t = self._type()
        if self.pos != len(self.text):
            self._fail(f"unexpected {self.text[self.pos]!r}")
        return t

    def _type(self) -> ColumnType:
        start = self.pos
        ident = self._ident()
        if ident == "array":
            self._expect("<")
            inner = self._type()
            self._expect(">")
            return ArrayType(inner)
        try:
            return PrimitiveType(ident)
        except ValueError:
            self.pos = start
            self._fail(f"unknown type {ident!r}" if ident else "missing type")

    def _ident(self) -> str:
        start = self.pos
        while self.pos < len(self.text) and (self.text[self.pos].isalnum() or self.text[self.pos] == "_"):
            self.pos += 1
        return self.text[start:self.pos]

    def _expect(self, ch: str) -> None:
        if self.pos >= len(self.text) or self.text[self.pos] != ch:
            self._fail(f"expected {ch!r}")
        self.pos += 1

    def _fail(self, why: str):
        raise SchemaParseError(
            f"invalid column type {self.text!r} at position {self.pos}: {why}",
            text=self.text,
            position=self.pos,
            operation="parse_schema",
        )


def parse_type(text: str) -> ColumnType:
    return _TypeParser(text.strip().lower()).parse()


def render_type(t: ColumnType) -> str:
    return str(t)


@dataclass(frozen=True)
class Column:
    name: str
    type: ColumnType

    @classmethod
    def parse(cls, text: str) -> "Column":
        name, sep, type_text = text.partition(":")
        name = name.strip()
        if not sep or not name:
            raise SchemaParseError(
                f"invalid column {text!r}: expected 'name:type'", text=text, operation="parse_schema"
            )
        return cls(name, parse_type(type_text))

    def __str__(self) -> str:
        return f"{self.name}:{self.type}"


@dataclass(frozen=True)
class TableSchema:
    columns: tuple[Column, ...] = ()

    @classmethod
    def parse(cls, pairs: Iterable[str]) -> "TableSchema":
        """Parse ``["name:type", ...]``."""
        return cls(tuple(Column.parse(p) for p in pairs))

    @classmethod
    def from_pairs(cls, pairs: Iterable[Sequence[str]]) -> "TableSchema":
        """Build from the service's ``[[name, type], ...]`` layout."""
        cols = []
        for pair in pairs:
            if len(pair) < 2:
                raise SchemaParseError(f"invalid schema entry {pair!r}", text=str(pair), operation="parse_schema")
            cols.append(Column(str(pair[0]), parse_type(str(pair[1]))))
        return cls(tuple(cols))

    def to_strings(self) -> list[str]:
        return [str(c) for c in self.columns]

    def to_pairs(self) -> list[list[str]]:
        return [[c.name, str(c.type)] for c in self.columns]

    def __len__(self) -> int:
        return len(self.columns)

    def __iter__(self):
        return iter(self.columns)
