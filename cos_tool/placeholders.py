"""
Template variable placeholder codec.

Dashboard queries carry template variables (``$job``, ``${job}``,
``${job:regex}``) that no query grammar accepts. Before parsing, every
variable is swapped for a grammar-valid placeholder chosen according to the
syntactic slot it occupies; after printing, the placeholders are swapped
back so the variables reappear verbatim and in place.

Slots are recognised by a coarse, template-aware tokenizer and allocated in
a fixed precedence order: metric name components, then range durations,
then matcher values, then everything else.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple

from .errors import StructuralPositionError
from .lexing import Token, Tokenizer

logger = logging.getLogger(__name__)

VARIABLE_PATTERN = r'\$(?:\{[^}]+\}|\w+)'
VARIABLE = re.compile(VARIABLE_PATTERN)

# Far above any literal expected in a real query.
PLACEHOLDER_BASE = 99990000

# Metric name placeholders must lex as part of one identifier.
METRIC_NAME_PLACEHOLDER = "__tmplvar{}__"

GROUPING_KEYWORDS = {'by', 'without', 'on', 'ignoring', 'group_left', 'group_right'}
MATCHER_OPERATORS = {'=', '!=', '=~', '!~'}


class ContextKind(str, Enum):
    """Syntactic slot a template variable occupies."""
    METRIC_NAME = 'metric_name'
    DURATION = 'duration'
    LABEL_VALUE = 'label_value'
    GENERIC = 'generic'


# Allocation order; earlier kinds claim a variable's placeholder first.
PRECEDENCE = [
    ContextKind.METRIC_NAME,
    ContextKind.DURATION,
    ContextKind.LABEL_VALUE,
    ContextKind.GENERIC,
]


@dataclass
class VariableOccurrence:
    """One template variable found in a query.

    Attributes:
        original: The variable text exactly as written
        kind: The slot the variable occupies
        start: Offset of the variable in the query
        quoted: Whether a matcher value was written inside quotes
        label: The matcher label name, for matcher values
    """
    original: str
    kind: ContextKind
    start: int
    quoted: bool = False
    label: Optional[str] = None

    @property
    def end(self) -> int:
        return self.start + len(self.original)


@dataclass
class PlaceholderEntry:
    """Placeholder allocated for one distinct variable text.

    Attributes:
        placeholder: The grammar-valid stand-in token
        original: The variable text it stands for
        kind: The slot kind that allocated it
        bare_labels: Label names whose matcher held the variable unquoted
    """
    placeholder: str
    original: str
    kind: ContextKind
    bare_labels: Set[str] = field(default_factory=set)


class PlaceholderTable:
    """Bidirectional placeholder mapping scoped to one transformation."""

    def __init__(self, base: int = PLACEHOLDER_BASE):
        self._next = base
        self._by_original: Dict[str, PlaceholderEntry] = {}
        self._by_placeholder: Dict[str, PlaceholderEntry] = {}
        self.occurrences: List[VariableOccurrence] = []

    def assign(self, occurrence: VariableOccurrence) -> str:
        """Return the placeholder for an occurrence, allocating it on first use."""
        self.occurrences.append(occurrence)
        entry = self._by_original.get(occurrence.original)
        if entry is None:
            counter = self._next
            self._next += 1
            if occurrence.kind == ContextKind.METRIC_NAME:
                token = METRIC_NAME_PLACEHOLDER.format(counter)
            else:
                token = str(counter)
            entry = PlaceholderEntry(token, occurrence.original, occurrence.kind)
            self._by_original[entry.original] = entry
            self._by_placeholder[entry.placeholder] = entry
            logger.debug("Allocated placeholder %s for %s (%s)",
                         token, entry.original, entry.kind.value)
        if occurrence.kind == ContextKind.LABEL_VALUE and not occurrence.quoted:
            entry.bare_labels.add(occurrence.label)
        return entry.placeholder

    def placeholder_for(self, original: str) -> Optional[str]:
        entry = self._by_original.get(original)
        return entry.placeholder if entry else None

    def entry_for(self, placeholder: str) -> Optional[PlaceholderEntry]:
        return self._by_placeholder.get(placeholder)

    def original_for(self, placeholder: str) -> Optional[str]:
        entry = self._by_placeholder.get(placeholder)
        return entry.original if entry else None

    def entries(self) -> List[PlaceholderEntry]:
        return list(self._by_original.values())

    def __len__(self) -> int:
        return len(self._by_original)

    def __contains__(self, original: str) -> bool:
        return original in self._by_original


class TemplateTokenizer(Tokenizer):
    """Coarse tokenizer that knows about template variables and nothing else."""

    SKIP = ()

    TOKEN_PATTERNS = [
        (r'"(?:[^"\\]|\\.)*"', 'STRING'),
        (r"'(?:[^'\\]|\\.)*'", 'STRING'),
        (r'`[^`]*`', 'STRING'),
        (VARIABLE_PATTERN, 'VARIABLE'),
        (r'[A-Za-z0-9_]+', 'WORD'),
        (r'\s+', 'WHITESPACE'),
        (r'=~|!~|!=|==|<=|>=|\|=|\|~|\|>|!>', 'OPERATOR'),
        (r'[\s\S]', 'PUNCT'),
    ]


@dataclass
class _Layout:
    """Nesting information for each token of a scanned query."""
    brace_depth: List[int] = field(default_factory=list)
    bracket_depth: List[int] = field(default_factory=list)
    enclosing_paren: List[Optional[int]] = field(default_factory=list)


class PlaceholderCodec:
    """Encodes template variables into placeholders and restores them.

    Args:
        format_duration: The dialect printer's rendering of milliseconds
        metric_names: Whether the dialect has bare metric names, which
            makes a variable at the start of a name unrepresentable
    """

    def __init__(self, format_duration: Callable[[int], str], metric_names: bool = True):
        self.format_duration = format_duration
        self.metric_names = metric_names

    # Scanning

    def scan(self, query: str) -> List[VariableOccurrence]:
        """Find and classify every variable of ``query``.

        Raises:
            StructuralPositionError: If a variable occupies a slot no
                placeholder can stand in for
        """
        tokens = TemplateTokenizer(query).get_tokens()
        layout = self._layout(tokens)
        occurrences: List[VariableOccurrence] = []

        for index, token in enumerate(tokens):
            if token.type == 'STRING':
                occurrences.extend(self._scan_string(tokens, layout, index))
            elif token.type == 'VARIABLE':
                self._check_position(query, tokens, layout, index)
                kind = self._classify(tokens, layout, index)
                label = None
                if kind == ContextKind.LABEL_VALUE:
                    label = self._matcher_label(tokens, index)
                occurrences.append(VariableOccurrence(token.value, kind, token.position, label=label))
        return occurrences

    @staticmethod
    def _layout(tokens: List[Token]) -> _Layout:
        layout = _Layout()
        braces = brackets = 0
        parens: List[int] = []
        for index, token in enumerate(tokens):
            layout.brace_depth.append(braces)
            layout.bracket_depth.append(brackets)
            layout.enclosing_paren.append(parens[-1] if parens else None)
            if token.type != 'PUNCT':
                continue
            if token.value == '{':
                braces += 1
            elif token.value == '}':
                braces = max(0, braces - 1)
            elif token.value == '[':
                brackets += 1
            elif token.value == ']':
                brackets = max(0, brackets - 1)
            elif token.value == '(':
                parens.append(index)
            elif token.value == ')' and parens:
                parens.pop()
        return layout

    @staticmethod
    def _previous(tokens: List[Token], index: int) -> Optional[Token]:
        index -= 1
        while index >= 0 and tokens[index].type == 'WHITESPACE':
            index -= 1
        return tokens[index] if index >= 0 else None

    @staticmethod
    def _previous_index(tokens: List[Token], index: int) -> int:
        index -= 1
        while index >= 0 and tokens[index].type == 'WHITESPACE':
            index -= 1
        return index

    @staticmethod
    def _next(tokens: List[Token], index: int) -> Optional[Token]:
        index += 1
        while index < len(tokens) and tokens[index].type == 'WHITESPACE':
            index += 1
        return tokens[index] if index < len(tokens) else None

    @staticmethod
    def _compound(tokens: List[Token], index: int) -> Tuple[int, int]:
        """Return the span of adjacent words and variables around ``index``."""
        start = end = index
        while start > 0 and tokens[start - 1].type in ('WORD', 'VARIABLE'):
            start -= 1
        while end + 1 < len(tokens) and tokens[end + 1].type in ('WORD', 'VARIABLE'):
            end += 1
        return start, end

    def _check_position(self, query: str, tokens: List[Token], layout: _Layout,
                        index: int) -> None:
        token = tokens[index]
        start, end = self._compound(tokens, index)

        following = self._next(tokens, end)
        if following is not None and following.value == '(':
            raise StructuralPositionError(
                f"template variable {token.value} at position {token.position}: "
                "function name positions are not supported",
                query=query, variable=token.value, position=token.position)

        paren = layout.enclosing_paren[index]
        if paren is not None:
            keyword = self._previous(tokens, paren)
            if (keyword is not None and keyword.type == 'WORD'
                    and keyword.value.lower() in GROUPING_KEYWORDS):
                raise StructuralPositionError(
                    f"template variable {token.value} at position {token.position}: "
                    "grouping (by/without) positions are not supported",
                    query=query, variable=token.value, position=token.position)

        if self.metric_names and start == index:
            glued = end + 1 < len(tokens) and tokens[end + 1].value == '{'
            ranged = following is not None and following.value == '['
            if end > start or glued or ranged:
                raise StructuralPositionError(
                    f"template variable {token.value} at position {token.position}: "
                    "metric name prefix positions are not supported",
                    query=query, variable=token.value, position=token.position)

    def _classify(self, tokens: List[Token], layout: _Layout,
                  index: int) -> ContextKind:
        start, end = self._compound(tokens, index)
        if (self.metric_names and tokens[start].type == 'WORD'
                and end + 1 < len(tokens) and tokens[end + 1].value == '{'):
            return ContextKind.METRIC_NAME
        if start != end:
            return ContextKind.GENERIC

        before = self._previous(tokens, index)
        after = self._next(tokens, index)
        before_value = before.value if before is not None else None
        after_value = after.value if after is not None else None

        if before_value == '[' and after_value in (']', ':'):
            return ContextKind.DURATION
        if before_value == ':' and layout.bracket_depth[index] > 0 and after_value == ']':
            return ContextKind.DURATION
        if before is not None and before.type == 'WORD' and before_value.lower() == 'offset':
            return ContextKind.DURATION

        if (layout.brace_depth[index] > 0 and after_value in (',', '}')
                and self._matcher_label(tokens, index) is not None):
            return ContextKind.LABEL_VALUE
        return ContextKind.GENERIC

    def _matcher_label(self, tokens: List[Token], index: int) -> Optional[str]:
        """Return the label name when ``index`` is the value of a matcher."""
        op_index = self._previous_index(tokens, index)
        if op_index < 0 or tokens[op_index].value not in MATCHER_OPERATORS:
            return None
        name = self._previous(tokens, op_index)
        if name is None or name.type != 'WORD':
            return None
        return name.value

    def _scan_string(self, tokens: List[Token], layout: _Layout,
                     index: int) -> List[VariableOccurrence]:
        token = tokens[index]
        content = token.value[1:-1]
        label = self._matcher_label(tokens, index) if layout.brace_depth[index] > 0 else None
        occurrences = []
        for match in VARIABLE.finditer(content):
            position = token.position + 1 + match.start()
            if label is not None and match.group(0) == content:
                occurrences.append(VariableOccurrence(
                    match.group(0), ContextKind.LABEL_VALUE, position, quoted=True, label=label))
            else:
                occurrences.append(VariableOccurrence(
                    match.group(0), ContextKind.GENERIC, position))
        return occurrences

    # Encoding

    def encode(self, query: str) -> Tuple[str, PlaceholderTable]:
        """Replace every template variable of ``query`` with a placeholder.

        Args:
            query: The query as written, variables included

        Returns:
            A tuple of (processed query, placeholder table)

        Raises:
            StructuralPositionError: If a variable is in an unsupported slot;
                nothing is substituted in that case
        """
        occurrences = self.scan(query)
        table = PlaceholderTable()

        replacements: Dict[int, str] = {}
        for kind in PRECEDENCE:
            for occurrence in occurrences:
                if occurrence.kind != kind:
                    continue
                placeholder = table.assign(occurrence)
                if kind == ContextKind.LABEL_VALUE and not occurrence.quoted:
                    placeholder = f'"{placeholder}"'
                replacements[occurrence.start] = placeholder

        parts = []
        last = 0
        for occurrence in sorted(occurrences, key=lambda o: o.start):
            parts.append(query[last:occurrence.start])
            parts.append(replacements[occurrence.start])
            last = occurrence.end
        parts.append(query[last:])

        if occurrences:
            logger.debug("Encoded %d template variable occurrence(s) using %d placeholder(s)",
                         len(occurrences), len(table))
        return ''.join(parts), table

    # Decoding

    def decode(self, text: str, table: PlaceholderTable) -> str:
        """Restore the original variables in printed ``text``."""
        durations: Dict[str, str] = {}
        for entry in table.entries():
            if entry.kind == ContextKind.DURATION and entry.placeholder.isdigit():
                normalized = self.format_duration(int(entry.placeholder) * 1000)
                durations[normalized] = entry.original
        for normalized in sorted(durations, key=lambda s: (-len(s), s)):
            text = text.replace(normalized, durations[normalized])

        text = self._unquote_bare_values(text, table)

        for entry in sorted(table.entries(), key=lambda e: (-len(e.placeholder), e.placeholder)):
            text = text.replace(entry.placeholder, entry.original)
        return text

    def _unquote_bare_values(self, text: str, table: PlaceholderTable) -> str:
        """Replace ``"N"`` with the bare variable in matchers that were written bare."""
        if not any(entry.bare_labels for entry in table.entries()):
            return text
        tokens = TemplateTokenizer(text).get_tokens()
        layout = self._layout(tokens)
        parts = []
        for index, token in enumerate(tokens):
            if token.type == 'STRING' and layout.brace_depth[index] > 0:
                entry = table.entry_for(token.value[1:-1])
                if entry is not None and self._matcher_label(tokens, index) in entry.bare_labels:
                    parts.append(entry.original)
                    continue
            parts.append(token.value)
        return ''.join(parts)
