"""
Syntax checking for Go text/template strings.

Alerting rule labels and annotations are Go templates expanded by the rule
evaluator. ``parse_test`` confirms a template is well formed (balanced
control structures, known functions, declared variables) without ever
executing it.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Set

from .errors import TemplateSyntaxError

# Go text/template built-ins.
BUILTIN_FUNCTIONS = {
    'and', 'call', 'html', 'index', 'slice', 'js', 'len', 'not', 'or',
    'print', 'printf', 'println', 'urlquery',
    'eq', 'ge', 'gt', 'le', 'lt', 'ne',
}

# Functions registered by the Prometheus rule template expander.
PROMETHEUS_FUNCTIONS = {
    'query', 'first', 'label', 'value', 'strvalue', 'args', 'reReplaceAll',
    'safeHtml', 'match', 'title', 'toUpper', 'toLower', 'graphLink',
    'tableLink', 'sortByLabel', 'humanize', 'humanize1024',
    'humanizeDuration', 'humanizePercentage', 'humanizeTimestamp',
    'toTime', 'toDuration', 'pathPrefix', 'externalURL', 'parseDuration',
    'now', 'stripPort', 'stripDomain', 'urlQueryEscape',
}

DEFAULT_FUNCTIONS = BUILTIN_FUNCTIONS | PROMETHEUS_FUNCTIONS

KEYWORDS = {'if', 'else', 'end', 'range', 'with', 'define', 'template',
            'block', 'break', 'continue'}

ALERT_TEMPLATE_DEFS = (
    "{{$labels := .Labels}}"
    "{{$externalLabels := .ExternalLabels}}"
    "{{$value := .Value}}"
)

_ACTION_TOKENS = [
    (re.compile(r'[ \t\r\n]+'), 'SPACE'),
    (re.compile(r':='), 'DECLARE'),
    (re.compile(r'='), 'ASSIGN'),
    (re.compile(r'\|'), 'PIPE'),
    (re.compile(r'\('), 'LPAREN'),
    (re.compile(r'\)'), 'RPAREN'),
    (re.compile(r','), 'COMMA'),
    (re.compile(r'"(?:[^"\\\n]|\\.)*"'), 'STRING'),
    (re.compile(r'`[^`]*`'), 'STRING'),
    (re.compile(r"'(?:[^'\\\n]|\\.)+'"), 'CHAR'),
    (re.compile(r'[+-]?(?:0[xX][0-9a-fA-F_]+|\d[\d_]*(?:\.\d*)?(?:[eE][+-]?\d+)?'
                r'|\.\d+(?:[eE][+-]?\d+)?)i?'), 'NUMBER'),
    (re.compile(r'\$[A-Za-z0-9_]*'), 'VARIABLE'),
    (re.compile(r'\.[A-Za-z_][A-Za-z0-9_]*'), 'FIELD'),
    (re.compile(r'\.'), 'DOT'),
    (re.compile(r'[A-Za-z_][A-Za-z0-9_]*'), 'IDENTIFIER'),
]


@dataclass
class _Item:
    type: str
    value: str
    adjacent: bool = False


@dataclass
class _Frame:
    keyword: str
    scope: int
    body_scope: int
    has_else: bool = False
    saved: Optional[List[str]] = None


@dataclass
class _Action:
    items: List[_Item]
    line: int


class _TemplateChecker:

    def __init__(self, text: str, name: str, functions: Set[str]):
        self.text = text
        self.name = name
        self.functions = functions
        self.variables: List[str] = ['$']
        self.frames: List[_Frame] = []
        self.line = 1

    def fail(self, msg: str) -> TemplateSyntaxError:
        return TemplateSyntaxError(f"template: {self.name}:{self.line}: {msg}")

    # Lexing

    def actions(self) -> List[_Action]:
        actions = []
        text = self.text
        pos = 0
        while True:
            start = text.find('{{', pos)
            if start < 0:
                return actions
            self.line = text.count('\n', 0, start) + 1
            inner = start + 2
            if text.startswith('- ', inner) or text.startswith('-\t', inner) \
                    or text.startswith('-\n', inner) or text.startswith('-\r', inner):
                inner += 1
            stripped = inner
            while stripped < len(text) and text[stripped] in ' \t\r\n':
                stripped += 1
            if text.startswith('/*', stripped):
                close = text.find('*/', stripped + 2)
                if close < 0:
                    raise self.fail("unclosed comment")
                after = close + 2
                match = re.compile(r'(?:[ \t\r\n]+-)?}}').match(text, after)
                if not match:
                    raise self.fail("comment ends before closing delimiter")
                pos = match.end()
                continue
            items, pos = self._lex_action(inner)
            actions.append(_Action(items, self.line))

    def _lex_action(self, pos: int):
        text = self.text
        items: List[_Item] = []
        previous_end = -1
        while True:
            if pos >= len(text):
                raise self.fail("unclosed action")
            trim = re.compile(r'[ \t\r\n]+-}}').match(text, pos)
            if trim:
                return items, trim.end()
            if text.startswith('}}', pos):
                return items, pos + 2
            for regex, item_type in _ACTION_TOKENS:
                match = regex.match(text, pos)
                if match:
                    break
            else:
                char = text[pos]
                if char in '"`\'':
                    raise self.fail("unterminated quoted string")
                raise self.fail(f"unrecognized character in action: U+{ord(char):04X} {char!r}")
            if item_type != 'SPACE':
                items.append(_Item(item_type, match.group(0), adjacent=previous_end == pos))
                previous_end = match.end()
            pos = match.end()

    # Parsing

    def check(self) -> None:
        for action in self.actions():
            self.line = action.line
            self._action(action.items)
        if self.frames:
            raise self.fail("unexpected EOF")

    def _action(self, items: List[_Item]) -> None:
        if not items:
            raise self.fail("missing value for command")
        head = items[0]
        keyword = head.value if head.type == 'IDENTIFIER' and head.value in KEYWORDS else None

        if keyword in ('if', 'with', 'range'):
            scope = len(self.variables)
            self._pipeline(items[1:], keyword, allow_range_decl=keyword == 'range')
            self.frames.append(_Frame(keyword, scope, len(self.variables)))
        elif keyword == 'else':
            self._else(items)
        elif keyword == 'end':
            if len(items) > 1:
                raise self.fail(f"unexpected {items[1].value!r} in end")
            if not self.frames:
                raise self.fail("unexpected {{end}}")
            frame = self.frames.pop()
            if frame.saved is not None:
                self.variables = frame.saved
            else:
                del self.variables[frame.scope:]
        elif keyword == 'define':
            if self.frames:
                raise self.fail("unexpected <define> in command")
            if len(items) != 2 or items[1].type != 'STRING':
                raise self.fail("name of template in define must be a string")
            self.frames.append(_Frame('define', 0, 1, saved=self.variables))
            self.variables = ['$']
        elif keyword == 'block':
            if len(items) < 2 or items[1].type != 'STRING':
                raise self.fail("name of template in block must be a string")
            self._pipeline(items[2:], 'block')
            self.frames.append(_Frame('block', 0, 1, saved=self.variables))
            self.variables = ['$']
        elif keyword == 'template':
            if len(items) < 2 or items[1].type != 'STRING':
                raise self.fail("unexpected name in template clause, expected string")
            if len(items) > 2:
                self._pipeline(items[2:], 'template')
        elif keyword in ('break', 'continue'):
            if not any(frame.keyword == 'range' for frame in self.frames):
                raise self.fail(f"{{{{{keyword}}}}} outside {{{{range}}}}")
            if len(items) > 1:
                raise self.fail(f"unexpected {items[1].value!r} in {{{{{keyword}}}}}")
        else:
            self._pipeline(items, 'command')

    def _else(self, items: List[_Item]) -> None:
        if not self.frames or self.frames[-1].keyword not in ('if', 'with', 'range'):
            raise self.fail("unexpected {{else}}")
        frame = self.frames[-1]
        if frame.has_else:
            raise self.fail("expected end; found {{else}}")
        del self.variables[frame.body_scope:]
        if len(items) == 1:
            frame.has_else = True
            return
        chained = items[1].value
        if items[1].type != 'IDENTIFIER' or chained not in ('if', 'with') \
                or (chained == 'with' and frame.keyword != 'with'):
            raise self.fail(f"unexpected {chained!r} in else")
        self._pipeline(items[2:], chained)
        frame.body_scope = len(self.variables)

    def _pipeline(self, items: List[_Item], context: str,
                  allow_range_decl: bool = False) -> None:
        pos = self._declarations(items, allow_range_decl)
        if pos >= len(items):
            raise self.fail(f"missing value for {context}")
        pos = self._commands(items, pos, context)
        if pos < len(items):
            raise self.fail(f"unexpected {items[pos].value!r} in {context}")

    def _declarations(self, items: List[_Item], allow_range_decl: bool) -> int:
        names = []
        pos = 0
        while pos < len(items) and items[pos].type == 'VARIABLE':
            names.append(items[pos].value)
            following = items[pos + 1] if pos + 1 < len(items) else None
            if following is not None and following.type == 'COMMA' and allow_range_decl \
                    and len(names) == 1:
                pos += 2
                continue
            if following is not None and following.type in ('DECLARE', 'ASSIGN'):
                if following.type == 'DECLARE':
                    self.variables.extend(names)
                else:
                    for name in names:
                        self._check_variable(name)
                return pos + 2
            if len(names) > 1:
                raise self.fail("too many declarations in range")
            return 0
        return 0

    def _commands(self, items: List[_Item], pos: int, context: str) -> int:
        pos = self._command(items, pos, context)
        while pos < len(items) and items[pos].type == 'PIPE':
            pos = self._command(items, pos + 1, context)
        return pos

    def _command(self, items: List[_Item], pos: int, context: str) -> int:
        start = pos
        while pos < len(items) and items[pos].type not in ('PIPE', 'RPAREN'):
            pos = self._operand(items, pos)
        if pos == start:
            raise self.fail("missing value for command")
        if items[start].type == 'IDENTIFIER' and items[start].value == 'nil' and pos - start == 1:
            raise self.fail("nil is not a command")
        return pos

    def _operand(self, items: List[_Item], pos: int) -> int:
        item = items[pos]
        if item.type in ('FIELD', 'DOT', 'STRING', 'CHAR', 'NUMBER'):
            pos += 1
        elif item.type == 'VARIABLE':
            self._check_variable(item.value)
            pos += 1
        elif item.type == 'IDENTIFIER':
            if item.value in KEYWORDS:
                raise self.fail(f"unexpected <{item.value}> in operand")
            if item.value not in ('true', 'false', 'nil') and item.value not in self.functions:
                raise self.fail(f'function "{item.value}" not defined')
            pos += 1
        elif item.type == 'LPAREN':
            pos = self._commands(items, pos + 1, 'parenthesized pipeline')
            if pos >= len(items) or items[pos].type != 'RPAREN':
                raise self.fail("unclosed left paren")
            pos += 1
        else:
            raise self.fail(f"unexpected {item.value!r} in operand")
        # Field chains such as $x.Labels.job or (pipeline).Field
        while pos < len(items) and items[pos].type == 'FIELD' and items[pos].adjacent:
            pos += 1
        return pos

    def _check_variable(self, name: str) -> None:
        if name not in self.variables:
            raise self.fail(f'undefined variable "{name}"')


def parse_test(text: str, name: str = "test", defs: str = "",
               functions: Optional[Set[str]] = None) -> None:
    """Check that ``defs + text`` is a well-formed Go template.

    Args:
        text: The template to check
        name: Template name used in error messages
        defs: Prefix declaring variables, such as ALERT_TEMPLATE_DEFS
        functions: Callable function names; Go built-ins plus the
            Prometheus template functions by default

    Raises:
        TemplateSyntaxError: If the template does not parse
    """
    checker = _TemplateChecker(defs + text, name, functions or DEFAULT_FUNCTIONS)
    checker.check()


def check_alert_template(text: str, alert_name: str) -> None:
    """Parse-test an alerting rule label or annotation value."""
    parse_test(text, name=f"__alert_{alert_name}", defs=ALERT_TEMPLATE_DEFS)
