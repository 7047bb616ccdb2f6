"""
Data models shared by the query dialects.

Defines label matchers and the minimal node interface every dialect AST
implements so the matcher injector can walk either tree.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List

from .lexing import quote


class MatchType(str, Enum):
    """Label matcher operator."""
    EQUAL = '='
    NOT_EQUAL = '!='
    REGEX_MATCH = '=~'
    REGEX_NOT_MATCH = '!~'

    def __str__(self) -> str:
        return self.value

    @property
    def is_regex(self) -> bool:
        return self in (MatchType.REGEX_MATCH, MatchType.REGEX_NOT_MATCH)


@dataclass
class Matcher:
    """A single label constraint of a selector.

    Attributes:
        name: The label name (e.g., 'job', '__name__')
        type: The comparison operator
        value: The value or regular expression to compare against
    """
    name: str
    type: MatchType
    value: str

    def __str__(self) -> str:
        return f"{self.name}{self.type.value}{quote(self.value)}"

    def matches(self, value: str) -> bool:
        """Return whether a label value satisfies this matcher.

        Regular expressions are fully anchored, as in Prometheus.
        """
        if self.type == MatchType.EQUAL:
            return value == self.value
        if self.type == MatchType.NOT_EQUAL:
            return value != self.value
        matched = re.fullmatch(self.value, value) is not None
        return matched if self.type == MatchType.REGEX_MATCH else not matched


class Node:
    """Base class of every AST node."""

    def children(self) -> List['Node']:
        """Return the direct child nodes."""
        return []


class SelectorNode(Node):
    """A node that selects series or streams by label matchers."""

    matchers: List[Matcher]

    def append_matchers(self, matchers: List[Matcher]) -> None:
        self.matchers.extend(matchers)

    def has_label(self, name: str) -> bool:
        return any(matcher.name == name for matcher in self.matchers)


def walk(node: Node) -> Iterator[Node]:
    """Yield ``node`` and all its descendants, depth first, parents first."""
    yield node
    for child in node.children():
        yield from walk(child)
