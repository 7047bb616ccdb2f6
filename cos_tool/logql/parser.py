"""
LogQL tokenizer and parser.

Log queries and metric queries are parsed by one recursive descent parser;
binary operators use the same precedence climbing as PromQL.
"""

import re
from typing import List, Optional, Tuple

from ..durations import DurationError, parse_duration, seconds_to_millis
from ..errors import GrammarParseError
from ..lexing import BaseParser, Token, Tokenizer, unquote
from ..models import Matcher, MatchType
from .ast import (
    BinaryLabelFilter,
    BinaryOp,
    ComparisonFilter,
    Decolorize,
    Expr,
    FilterValue,
    Grouping,
    IpFilter,
    LabelFilter,
    LabelFilterStage,
    LabelFormat,
    LabelParser,
    LabelReplace,
    LabelSelection,
    LineFilter,
    LineFormat,
    Literal,
    LogQuery,
    LogRange,
    MatcherFilter,
    ParenExpr,
    ParenLabelFilter,
    RangeAggregation,
    StreamSelector,
    Unwrap,
    VectorAggregation,
    VectorExpr,
    VectorMatching,
)

RANGE_OPS = {
    'count_over_time', 'rate', 'rate_counter', 'bytes_over_time', 'bytes_rate',
    'avg_over_time', 'sum_over_time', 'min_over_time', 'max_over_time',
    'stdvar_over_time', 'stddev_over_time', 'quantile_over_time',
    'first_over_time', 'last_over_time', 'absent_over_time',
}
UNWRAP_REQUIRED = {
    'rate_counter', 'avg_over_time', 'sum_over_time', 'min_over_time',
    'max_over_time', 'stdvar_over_time', 'stddev_over_time',
    'quantile_over_time', 'first_over_time', 'last_over_time',
}
UNWRAP_FORBIDDEN = {'count_over_time', 'bytes_over_time', 'bytes_rate', 'absent_over_time'}

VECTOR_OPS = {'sum', 'avg', 'min', 'max', 'stddev', 'stdvar', 'count',
              'topk', 'bottomk', 'sort', 'sort_desc'}
PARAM_VECTOR_OPS = {'topk', 'bottomk'}

LINE_FILTER_OPS = {'PIPE_EXACT', 'NEQ', 'PIPE_MATCH', 'NRE', 'PIPE_PATTERN', 'NPA'}
PARSERS = {'json', 'logfmt', 'regexp', 'pattern', 'unpack'}
UNWRAP_CONVERSIONS = {'duration', 'duration_seconds', 'bytes'}

PRECEDENCE = {
    'or': 1,
    'and': 2, 'unless': 2,
    '==': 3, '!=': 3, '<=': 3, '<': 3, '>=': 3, '>': 3,
    '+': 4, '-': 4,
    '*': 5, '/': 5, '%': 5,
    '^': 6,
}
COMPARISON_OPS = {'==', '!=', '<=', '<', '>=', '>'}

MATCH_TYPES = {
    'EQ': MatchType.EQUAL,
    'NEQ': MatchType.NOT_EQUAL,
    'RE': MatchType.REGEX_MATCH,
    'NRE': MatchType.REGEX_NOT_MATCH,
}
COMPARISON_TOKENS = {'CMP_EQ', 'EQ', 'NEQ', 'GT', 'GTE', 'LT', 'LTE'}


class LogQLTokenizer(Tokenizer):
    """Tokenizes LogQL queries."""

    TOKEN_PATTERNS = [
        (r'#[^\n]*', 'COMMENT'),
        (r'\s+', 'WHITESPACE'),
        (r'"(?:[^"\\]|\\.)*"', 'STRING'),
        (r'`[^`]*`', 'STRING'),
        (r'(?:\d+(?:\.\d+)?(?:ns|us|µs|ms|[smhdwy]))+(?![\w.])', 'DURATION'),
        (r'(?i)\d+(?:\.\d+)?(?:[kmgtpe]i?)?b(?![\w.])', 'BYTES'),
        (r'(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?', 'NUMBER'),
        (r'--[a-z][a-z-]*', 'FLAG'),
        (r'[a-zA-Z_][a-zA-Z0-9_]*', 'IDENTIFIER'),
        (r'\|=', 'PIPE_EXACT'),
        (r'\|~', 'PIPE_MATCH'),
        (r'\|>', 'PIPE_PATTERN'),
        (r'!>', 'NPA'),
        (r'\|', 'PIPE'),
        (r'==', 'CMP_EQ'),
        (r'!=', 'NEQ'),
        (r'=~', 'RE'),
        (r'!~', 'NRE'),
        (r'>=', 'GTE'),
        (r'<=', 'LTE'),
        (r'>', 'GT'),
        (r'<', 'LT'),
        (r'=', 'EQ'),
        (r'\+', 'ADD'),
        (r'-', 'SUB'),
        (r'\*', 'MUL'),
        (r'/', 'DIV'),
        (r'%', 'MOD'),
        (r'\^', 'POW'),
        (r'\(', 'OPEN_PAREN'),
        (r'\)', 'CLOSE_PAREN'),
        (r'\{', 'OPEN_BRACE'),
        (r'\}', 'CLOSE_BRACE'),
        (r'\[', 'OPEN_BRACKET'),
        (r'\]', 'CLOSE_BRACKET'),
        (r',', 'COMMA'),
    ]


class LogQLParser(BaseParser):
    """Parses LogQL tokens into an expression tree."""

    def _unexpected(self, expected: Optional[str] = None) -> GrammarParseError:
        token = self._current_token()
        found = token.value if token is not None else "$end"
        msg = f"syntax error: unexpected {found}"
        if expected:
            msg += f", expecting {expected}"
        return self._error(msg, token)

    def parse(self) -> Expr:
        """Parse a complete log or metric query."""
        expr = self._parse_expr(0)
        self._expect_end()
        return expr

    # Binary operations

    def _binary_op(self) -> Optional[str]:
        token = self._current_token()
        if token is None:
            return None
        if token.type == 'IDENTIFIER':
            word = token.value.lower()
            return word if word in ('and', 'or', 'unless') else None
        if token.type == 'CMP_EQ':
            return '=='
        if token.type in ('NEQ', 'GT', 'GTE', 'LT', 'LTE', 'ADD', 'SUB',
                          'MUL', 'DIV', 'MOD', 'POW'):
            return token.value
        return None

    def _parse_expr(self, min_precedence: int) -> Expr:
        lhs = self._parse_unary()
        while True:
            op = self._binary_op()
            if op is None or PRECEDENCE[op] < min_precedence:
                return lhs
            if lhs.is_log:
                raise self._unexpected()
            self._consume()
            return_bool = False
            if self._at_keyword('bool'):
                if op not in COMPARISON_OPS:
                    raise self._unexpected()
                self._consume()
                return_bool = True
            matching = self._parse_vector_matching()
            next_min = PRECEDENCE[op] if op == '^' else PRECEDENCE[op] + 1
            rhs = self._parse_expr(next_min)
            if rhs.is_log:
                raise self._error("syntax error: unexpected log query in binary operation")
            lhs = BinaryOp(op, lhs, rhs, return_bool, matching)

    def _parse_vector_matching(self) -> Optional[VectorMatching]:
        if not self._at_keyword('on', 'ignoring'):
            return None
        matching = VectorMatching(on=self._consume().value.lower() == 'on')
        matching.labels = self._parse_labels()
        if self._at_keyword('group_left', 'group_right'):
            matching.card = self._consume().value.lower()
            if self._at('OPEN_PAREN'):
                matching.include = self._parse_labels()
        return matching

    def _parse_unary(self) -> Expr:
        if self._at('SUB', 'ADD'):
            sign = -1.0 if self._consume().value == '-' else 1.0
            token = self._consume('NUMBER', 'NUMBER')
            return Literal(sign * float(token.value))
        return self._parse_primary()

    def _parse_primary(self) -> Expr:
        token = self._current_token()
        if token is None:
            raise self._unexpected()
        if token.type == 'OPEN_BRACE':
            return self._parse_log_query()
        if token.type == 'NUMBER':
            self._consume()
            return Literal(float(token.value))
        if token.type == 'OPEN_PAREN':
            self._consume()
            inner = self._parse_expr(0)
            self._consume('CLOSE_PAREN', ')')
            return ParenExpr(inner)
        if token.type == 'IDENTIFIER':
            word = token.value.lower()
            following = self._peek_token()
            opens = following is not None and following.type == 'OPEN_PAREN'
            if word in RANGE_OPS and opens:
                return self._parse_range_aggregation()
            if word in VECTOR_OPS and (opens or (
                    following is not None and following.type == 'IDENTIFIER'
                    and following.value.lower() in ('by', 'without'))):
                return self._parse_vector_aggregation()
            if word == 'label_replace' and opens:
                return self._parse_label_replace()
            if word == 'vector' and opens:
                self._consume()
                self._consume('OPEN_PAREN', '(')
                value = self._parse_unary()
                if not isinstance(value, Literal):
                    raise self._unexpected("NUMBER")
                self._consume('CLOSE_PAREN', ')')
                return VectorExpr(value.value)
        raise self._unexpected()

    # Aggregations

    def _parse_grouping(self) -> Grouping:
        without = self._consume().value.lower() == 'without'
        return Grouping(self._parse_labels(), without)

    def _parse_labels(self) -> List[str]:
        self._consume('OPEN_PAREN', '(')
        labels: List[str] = []
        while self._at('IDENTIFIER'):
            labels.append(self._consume().value)
            if not self._at('COMMA'):
                break
            self._consume()
        self._consume('CLOSE_PAREN', ')')
        return labels

    def _parse_range_aggregation(self) -> RangeAggregation:
        op_token = self._consume('IDENTIFIER')
        op = op_token.value.lower()
        self._consume('OPEN_PAREN', '(')
        param = None
        if self._at('NUMBER'):
            param = float(self._consume().value)
            self._consume('COMMA', ',')
        log_range = self._parse_log_range()
        self._consume('CLOSE_PAREN', ')')
        grouping = None
        if self._at_keyword('by', 'without'):
            grouping = self._parse_grouping()

        if op == 'quantile_over_time' and param is None:
            raise self._error("syntax error: quantile_over_time requires a parameter", op_token)
        if op != 'quantile_over_time' and param is not None:
            raise self._error(f"syntax error: {op} does not accept a parameter", op_token)
        if op in UNWRAP_REQUIRED and log_range.unwrap is None:
            raise self._error(f"invalid aggregation {op} without unwrap", op_token)
        if op in UNWRAP_FORBIDDEN and log_range.unwrap is not None:
            raise self._error(f"invalid aggregation {op} with unwrap", op_token)
        return RangeAggregation(op, log_range, param, grouping)

    def _parse_vector_aggregation(self) -> VectorAggregation:
        op_token = self._consume('IDENTIFIER')
        op = op_token.value.lower()
        grouping = None
        if self._at_keyword('by', 'without'):
            grouping = self._parse_grouping()
        self._consume('OPEN_PAREN', '(')
        param = None
        if op in PARAM_VECTOR_OPS:
            token = self._consume('NUMBER', 'NUMBER')
            if not re.fullmatch(r'\d+', token.value):
                raise self._error(f"syntax error: invalid parameter {op}({token.value},)", token)
            param = int(token.value)
            self._consume('COMMA', ',')
        expr = self._parse_expr(0)
        if expr.is_log:
            raise self._error("syntax error: unexpected log query in vector aggregation",
                              op_token)
        self._consume('CLOSE_PAREN', ')')
        if self._at_keyword('by', 'without'):
            if grouping is not None:
                raise self._unexpected()
            grouping = self._parse_grouping()
        return VectorAggregation(op, expr, param, grouping)

    def _parse_label_replace(self) -> LabelReplace:
        self._consume('IDENTIFIER')
        self._consume('OPEN_PAREN', '(')
        expr = self._parse_expr(0)
        if expr.is_log:
            raise self._unexpected()
        args = []
        for _ in range(4):
            self._consume('COMMA', ',')
            args.append(self._string())
        self._consume('CLOSE_PAREN', ')')
        self._check_regex(args[3], self.tokens[self.position - 2])
        return LabelReplace(expr, *args)

    # Log queries and ranges

    def _parse_log_range(self) -> LogRange:
        if self._at('OPEN_PAREN'):
            self._consume()
            query: Expr = ParenExpr(self._parse_log_query())
            self._consume('CLOSE_PAREN', ')')
        else:
            query = self._parse_log_query()
        unwrap = self._parse_unwrap()
        self._consume('OPEN_BRACKET', '[')
        interval = self._parse_range_duration()
        self._consume('CLOSE_BRACKET', ']')

        # The range may also be written before the pipeline.
        if isinstance(query, LogQuery) and unwrap is None:
            query.stages.extend(self._parse_pipeline())
            unwrap = self._parse_unwrap()

        offset = 0
        if self._at_keyword('offset'):
            self._consume()
            offset = self._parse_range_duration()
        return LogRange(query, interval, unwrap, offset)

    def _parse_range_duration(self) -> int:
        token = self._current_token()
        if token is not None and token.type == 'DURATION':
            self._consume()
            try:
                return parse_duration(token.value, allow_fraction=True)
            except DurationError as e:
                raise self._error(str(e), token)
        if token is not None and token.type == 'NUMBER':
            self._consume()
            return seconds_to_millis(float(token.value))
        if token is not None and token.type == 'SUB':
            following = self._peek_token()
            if following is not None and following.type in ('DURATION', 'NUMBER'):
                raise self._error(str(DurationError("-" + following.value)), token)
        raise self._unexpected("RANGE")

    def _parse_unwrap(self) -> Optional[Unwrap]:
        following = self._peek_token()
        if not (self._at('PIPE') and following is not None
                and following.type == 'IDENTIFIER' and following.value == 'unwrap'):
            return None
        self._consume()
        self._consume()
        label = self._consume('IDENTIFIER', 'IDENTIFIER')
        unwrap = Unwrap(label.value)
        if label.value in UNWRAP_CONVERSIONS and self._at('OPEN_PAREN'):
            self._consume()
            unwrap = Unwrap(self._consume('IDENTIFIER', 'IDENTIFIER').value, label.value)
            self._consume('CLOSE_PAREN', ')')
        while self._at('PIPE'):
            self._consume()
            unwrap.post_filters.append(self._parse_label_filter())
        return unwrap

    def _parse_log_query(self) -> LogQuery:
        selector = self._parse_selector()
        return LogQuery(selector, self._parse_pipeline())

    def _parse_selector(self) -> StreamSelector:
        start = self._consume('OPEN_BRACE', '{')
        matchers: List[Matcher] = []
        while not self._at('CLOSE_BRACE'):
            matchers.append(self._parse_matcher())
            if not self._at('COMMA'):
                break
            self._consume()
        self._consume('CLOSE_BRACE', '}')
        if not any(m.type in (MatchType.EQUAL, MatchType.REGEX_MATCH) and not m.matches("")
                   for m in matchers):
            raise self._error(
                "syntax error: queries require at least one regexp or equality matcher "
                "that does not have an empty-compatible value", start)
        return StreamSelector(matchers)

    def _parse_matcher(self) -> Matcher:
        name = self._consume('IDENTIFIER', 'IDENTIFIER')
        op = self._current_token()
        if op is None or op.type not in MATCH_TYPES:
            raise self._unexpected("=, !=, =~ or !~")
        self._consume()
        value_token = self._current_token()
        matcher = Matcher(name.value, MATCH_TYPES[op.type], self._string())
        if matcher.type.is_regex:
            self._check_regex(matcher.value, value_token)
        return matcher

    def _string(self) -> str:
        token = self._consume('STRING', 'STRING')
        try:
            return unquote(token.value)
        except ValueError as e:
            raise self._error(f"syntax error: {e}", token)

    def _parse_pipeline(self) -> List[object]:
        stages: List[object] = []
        while True:
            token = self._current_token()
            if token is None:
                return stages
            if token.type in LINE_FILTER_OPS:
                stages.append(self._parse_line_filter())
            elif token.type == 'PIPE':
                following = self._peek_token()
                if following is not None and following.value == 'unwrap':
                    return stages
                self._consume()
                stages.append(self._parse_pipe_stage())
            else:
                return stages

    def _parse_line_filter(self) -> LineFilter:
        op = self._consume()
        values = [self._parse_filter_value(op)]
        while self._at_keyword('or'):
            following = self._peek_token()
            if following is None or not (following.type == 'STRING' or following.value == 'ip'):
                break
            self._consume()
            values.append(self._parse_filter_value(op))
        return LineFilter(op.value, values)

    def _parse_filter_value(self, op: Token) -> FilterValue:
        if self._at_keyword('ip'):
            self._consume()
            self._consume('OPEN_PAREN', '(')
            value = FilterValue(self._string(), is_ip=True)
            self._consume('CLOSE_PAREN', ')')
            return value
        value_token = self._current_token()
        value = FilterValue(self._string())
        if op.type in ('PIPE_MATCH', 'NRE'):
            self._check_regex(value.value, value_token)
        return value

    def _parse_pipe_stage(self) -> object:
        token = self._current_token()
        if token is None:
            raise self._unexpected()
        word = token.value if token.type == 'IDENTIFIER' else None
        following = self._peek_token()
        is_keyword = word is not None and (
            following is None or following.type not in COMPARISON_TOKENS | set(MATCH_TYPES))

        if is_keyword and word in PARSERS:
            self._consume()
            stage = LabelParser(word)
            if word in ('regexp', 'pattern'):
                stage.argument = self._string()
            elif word in ('json', 'logfmt'):
                while word == 'logfmt' and self._at('FLAG'):
                    stage.flags.append(self._consume().value)
                stage.params = self._parse_extraction_params()
            return stage
        if is_keyword and word == 'line_format':
            self._consume()
            return LineFormat(self._string())
        if is_keyword and word == 'label_format':
            self._consume()
            return LabelFormat(self._parse_label_format_items())
        if is_keyword and word == 'decolorize':
            self._consume()
            return Decolorize()
        if is_keyword and word in ('drop', 'keep'):
            self._consume()
            return LabelSelection(word, self._parse_selection_items())
        return LabelFilterStage(self._parse_label_filter())

    def _parse_extraction_params(self) -> List[Tuple[str, Optional[str]]]:
        params: List[Tuple[str, Optional[str]]] = []
        while self._at('IDENTIFIER') and not self._at_keyword('or', 'and', 'unless', 'offset'):
            name = self._consume().value
            expr = None
            if self._at('EQ'):
                self._consume()
                expr = self._string()
            params.append((name, expr))
            if not self._at('COMMA'):
                break
            self._consume()
        return params

    def _parse_label_format_items(self) -> List[Tuple[str, str, bool]]:
        items = []
        while True:
            dst = self._consume('IDENTIFIER', 'IDENTIFIER').value
            self._consume('EQ', '=')
            if self._at('STRING'):
                items.append((dst, self._string(), True))
            else:
                items.append((dst, self._consume('IDENTIFIER', 'IDENTIFIER').value, False))
            if not self._at('COMMA'):
                return items
            self._consume()

    def _parse_selection_items(self) -> List[object]:
        items: List[object] = []
        while True:
            following = self._peek_token()
            if following is not None and following.type in MATCH_TYPES:
                items.append(MatcherFilter(self._parse_matcher()))
            else:
                items.append(self._consume('IDENTIFIER', 'IDENTIFIER').value)
            if not self._at('COMMA'):
                return items
            self._consume()

    # Label filters

    def _parse_label_filter(self) -> LabelFilter:
        left = self._parse_label_filter_and()
        while self._at_keyword('or'):
            self._consume()
            left = BinaryLabelFilter('or', left, self._parse_label_filter_and())
        return left

    def _parse_label_filter_and(self) -> LabelFilter:
        left = self._parse_label_filter_primary()
        while self._at_keyword('and') or self._at('COMMA'):
            self._consume()
            left = BinaryLabelFilter('and', left, self._parse_label_filter_primary())
        return left

    def _parse_label_filter_primary(self) -> LabelFilter:
        if self._at('OPEN_PAREN'):
            self._consume()
            inner = self._parse_label_filter()
            self._consume('CLOSE_PAREN', ')')
            return ParenLabelFilter(inner)

        name = self._consume('IDENTIFIER', 'IDENTIFIER')
        op = self._current_token()
        if op is None or op.type not in COMPARISON_TOKENS | set(MATCH_TYPES):
            raise self._unexpected("label filter operator")
        self._consume()

        if self._at('STRING'):
            if op.type not in MATCH_TYPES:
                raise self._unexpected()
            value_token = self._current_token()
            matcher = Matcher(name.value, MATCH_TYPES[op.type], self._string())
            if matcher.type.is_regex:
                self._check_regex(matcher.value, value_token)
            return MatcherFilter(matcher)
        if self._at_keyword('ip'):
            if op.type not in ('EQ', 'NEQ'):
                raise self._unexpected()
            self._consume()
            self._consume('OPEN_PAREN', '(')
            value = self._string()
            self._consume('CLOSE_PAREN', ')')
            return IpFilter(name.value, op.value, value)

        if op.type in ('RE', 'NRE'):
            raise self._unexpected("STRING")
        sign = ""
        if self._at('SUB'):
            self._consume()
            sign = "-"
        literal = self._current_token()
        if literal is None or literal.type not in ('NUMBER', 'DURATION', 'BYTES'):
            raise self._unexpected("NUMBER, DURATION or BYTES")
        self._consume()
        return ComparisonFilter(name.value, op.value, sign + literal.value)


def tokenize(text: str) -> List[Token]:
    return LogQLTokenizer(text).get_tokens()


def parse_logql(text: str) -> Expr:
    """Parse a LogQL query.

    Args:
        text: The query

    Returns:
        The root node of the query tree

    Raises:
        GrammarParseError: If the query is malformed
    """
    return LogQLParser(tokenize(text), text).parse()
