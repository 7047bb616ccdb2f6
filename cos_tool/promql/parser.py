"""
PromQL tokenizer and parser.

Implements a regex-table tokenizer and a precedence-climbing recursive
descent parser producing the tree in ``ast``, including the static type
checks Prometheus applies while parsing.
"""

import re
from typing import List, Optional

from ..durations import DurationError, parse_duration, seconds_to_millis
from ..errors import GrammarParseError
from ..lexing import BaseParser, Token, Tokenizer, unquote
from ..models import Matcher, MatchType
from .ast import (
    FUNCTIONS,
    SCALAR,
    STRING,
    VECTOR,
    AggregateExpr,
    AtModifier,
    BinaryExpr,
    Call,
    Expr,
    MatrixSelector,
    NumberLiteral,
    ParenExpr,
    StringLiteral,
    SubqueryExpr,
    UnaryExpr,
    VectorMatching,
    VectorSelector,
)

AGGREGATORS = {
    'sum', 'min', 'max', 'avg', 'group', 'stddev', 'stdvar', 'count',
    'count_values', 'bottomk', 'topk', 'quantile', 'limitk', 'limit_ratio',
}
PARAM_AGGREGATORS = {'count_values', 'bottomk', 'topk', 'quantile', 'limitk', 'limit_ratio'}

COMPARISON_OPS = {'==', '!=', '<=', '<', '>=', '>'}
SET_OPS = {'and', 'or', 'unless'}

PRECEDENCE = {
    'or': 1,
    'and': 2, 'unless': 2,
    '==': 3, '!=': 3, '<=': 3, '<': 3, '>=': 3, '>': 3,
    '+': 4, '-': 4,
    '*': 5, '/': 5, '%': 5, 'atan2': 5,
    '^': 6,
}

LABEL_NAME = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*$')

MATCH_TYPES = {
    'EQL': MatchType.EQUAL,
    'NEQ': MatchType.NOT_EQUAL,
    'EQL_REGEX': MatchType.REGEX_MATCH,
    'NEQ_REGEX': MatchType.REGEX_NOT_MATCH,
}


class PromQLTokenizer(Tokenizer):
    """Tokenizes PromQL expressions."""

    TOKEN_PATTERNS = [
        (r'#[^\n]*', 'COMMENT'),
        (r'\s+', 'WHITESPACE'),
        (r'"(?:[^"\\\n]|\\.)*"', 'STRING'),
        (r"'(?:[^'\\\n]|\\.)*'", 'STRING'),
        (r'`[^`]*`', 'STRING'),
        (r'(?:\d+(?:ms|[smhdwy]))+(?!\w)', 'DURATION'),
        (r'0[xX][0-9a-fA-F]+|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?', 'NUMBER'),
        # Subquery colon, as in [30m:1m] or [30m:]
        (r':(?=\s*[\d\]])', 'COLON'),
        (r'[a-zA-Z_:][a-zA-Z0-9_:]*', 'IDENTIFIER'),
        (r'==', 'EQLC'),
        (r'!=', 'NEQ'),
        (r'=~', 'EQL_REGEX'),
        (r'!~', 'NEQ_REGEX'),
        (r'<=', 'LTE'),
        (r'>=', 'GTE'),
        (r'<', 'LSS'),
        (r'>', 'GTR'),
        (r'=', 'EQL'),
        (r'\+', 'ADD'),
        (r'-', 'SUB'),
        (r'\*', 'MUL'),
        (r'/', 'DIV'),
        (r'%', 'MOD'),
        (r'\^', 'POW'),
        (r'\(', 'LEFT_PAREN'),
        (r'\)', 'RIGHT_PAREN'),
        (r'\{', 'LEFT_BRACE'),
        (r'\}', 'RIGHT_BRACE'),
        (r'\[', 'LEFT_BRACKET'),
        (r'\]', 'RIGHT_BRACKET'),
        (r',', 'COMMA'),
        (r':', 'COLON'),
        (r'@', 'AT'),
    ]


class PromQLParser(BaseParser):
    """Parses PromQL tokens into an expression tree."""

    def parse(self) -> Expr:
        """Parse a complete expression and check its types."""
        if not self.tokens:
            raise GrammarParseError.at("syntax error: unexpected end of input", self.text, 0)
        expr = self._parse_expr(0)
        self._expect_end()
        return expr

    # Operators

    def _binary_op(self) -> Optional[str]:
        token = self._current_token()
        if token is None:
            return None
        if token.type == 'IDENTIFIER':
            word = token.value.lower()
            return word if word in ('and', 'or', 'unless', 'atan2') else None
        if token.type == 'EQLC':
            return '=='
        if token.type in ('NEQ', 'LTE', 'GTE', 'LSS', 'GTR', 'ADD', 'SUB',
                          'MUL', 'DIV', 'MOD', 'POW'):
            return token.value
        return None

    def _parse_expr(self, min_precedence: int) -> Expr:
        lhs = self._parse_unary()
        while True:
            op = self._binary_op()
            if op is None or PRECEDENCE[op] < min_precedence:
                return lhs
            op_token = self._consume()
            precedence = PRECEDENCE[op]

            return_bool = False
            if self._at_keyword('bool'):
                self._consume()
                return_bool = True
            matching = self._parse_vector_matching()

            next_min = precedence if op == '^' else precedence + 1
            rhs = self._parse_expr(next_min)
            lhs = self._check_binary(
                BinaryExpr(op, lhs, rhs, return_bool, matching), op_token)

    def _parse_vector_matching(self) -> Optional[VectorMatching]:
        if not self._at_keyword('on', 'ignoring'):
            return None
        matching = VectorMatching(on=self._consume().value.lower() == 'on')
        matching.labels = self._parse_label_list()
        if self._at_keyword('group_left', 'group_right'):
            word = self._consume().value.lower()
            matching.card = 'many-to-one' if word == 'group_left' else 'one-to-many'
            if self._at('LEFT_PAREN'):
                matching.include = self._parse_label_list()
        return matching

    def _check_binary(self, node: BinaryExpr, token: Token) -> BinaryExpr:
        lhs_type, rhs_type = node.lhs.type, node.rhs.type
        for operand_type in (lhs_type, rhs_type):
            if operand_type not in (SCALAR, VECTOR):
                raise self._error(
                    "binary expression must contain only scalar and instant vector types",
                    token)
        if node.return_bool and node.op not in COMPARISON_OPS:
            raise self._error("bool modifier can only be used on comparison operators", token)
        if (node.op in COMPARISON_OPS and not node.return_bool
                and lhs_type == SCALAR and rhs_type == SCALAR):
            raise self._error("comparisons between scalars must use BOOL modifier", token)
        if node.op in SET_OPS and (lhs_type == SCALAR or rhs_type == SCALAR):
            raise self._error(
                f"set operator \"{node.op}\" not allowed in binary scalar expression", token)
        if node.matching is not None and (lhs_type != VECTOR or rhs_type != VECTOR):
            raise self._error("vector matching only allowed between instant vectors", token)
        if node.matching is not None and node.op in SET_OPS and node.matching.card != 'one-to-one':
            raise self._error(f"no grouping allowed for \"{node.op}\" operation", token)
        return node

    def _parse_unary(self) -> Expr:
        if self._at('ADD', 'SUB'):
            op = self._consume().value
            expr = self._parse_expr(PRECEDENCE['^'])
            if isinstance(expr, NumberLiteral):
                if op == '-':
                    expr.value = -expr.value
                return expr
            if expr.type not in (SCALAR, VECTOR):
                raise self._error(
                    "unary expression only allowed on expressions of type scalar or instant vector")
            return UnaryExpr(op, expr)
        return self._parse_postfix(self._parse_primary())

    # Postfix modifiers

    def _parse_postfix(self, expr: Expr) -> Expr:
        while True:
            if self._at('LEFT_BRACKET'):
                expr = self._parse_range(expr)
            elif self._at_keyword('offset'):
                self._consume()
                self._set_offset(expr, self._parse_offset_value())
            elif self._at('AT'):
                at_token = self._consume()
                self._set_at(expr, self._parse_at_value(), at_token)
            else:
                return expr

    def _parse_range(self, expr: Expr) -> Expr:
        bracket = self._consume('LEFT_BRACKET')
        range_ms = self._parse_duration_value()
        if self._at('COLON'):
            self._consume()
            step = 0
            if not self._at('RIGHT_BRACKET'):
                step = self._parse_duration_value()
            self._consume('RIGHT_BRACKET', ']')
            if expr.type != VECTOR:
                raise self._error(
                    f"subquery is only allowed on instant vector, got {expr.type} instead",
                    bracket)
            return SubqueryExpr(expr, range_ms, step)
        self._consume('RIGHT_BRACKET', ']')
        if not isinstance(expr, VectorSelector):
            raise self._error("ranges only allowed for vector selectors", bracket)
        if expr.offset or expr.at is not None:
            raise self._error("no offset or @ modifiers allowed before range", bracket)
        return MatrixSelector(expr, range_ms)

    def _parse_duration_value(self) -> int:
        token = self._current_token()
        if token is not None and token.type == 'DURATION':
            self._consume()
            try:
                return parse_duration(token.value)
            except DurationError as e:
                raise self._error(str(e), token)
        if token is not None and token.type == 'NUMBER':
            self._consume()
            return seconds_to_millis(_parse_number(token.value))
        if token is not None and token.type == 'SUB':
            following = self._peek_token()
            if following is not None and following.type in ('DURATION', 'NUMBER'):
                raise self._error(
                    str(DurationError("-" + following.value)), token)
        raise self._unexpected("duration")

    def _parse_offset_value(self) -> int:
        sign = 1
        if self._at('SUB'):
            self._consume()
            sign = -1
        return sign * self._parse_duration_value()

    def _set_offset(self, expr: Expr, offset: int) -> None:
        target = expr.vector_selector if isinstance(expr, MatrixSelector) else expr
        if not isinstance(target, (VectorSelector, SubqueryExpr)):
            raise self._error("offset modifier must be preceded by an instant vector selector "
                              "or range vector selector or a subquery")
        if target.offset:
            raise self._error("offset may not be set multiple times")
        target.offset = offset

    def _parse_at_value(self) -> AtModifier:
        if self._at_keyword('start', 'end'):
            word = self._consume().value.lower()
            self._consume('LEFT_PAREN', '(')
            self._consume('RIGHT_PAREN', ')')
            return AtModifier(preprocessor=word)
        sign = 1.0
        if self._at('SUB', 'ADD'):
            sign = -1.0 if self._consume().value == '-' else 1.0
        token = self._consume('NUMBER', 'timestamp')
        return AtModifier(timestamp=sign * _parse_number(token.value))

    def _set_at(self, expr: Expr, at: AtModifier, token: Token) -> None:
        target = expr.vector_selector if isinstance(expr, MatrixSelector) else expr
        if not isinstance(target, (VectorSelector, SubqueryExpr)):
            raise self._error("@ modifier must be preceded by an instant vector selector "
                              "or range vector selector or a subquery", token)
        if target.at is not None:
            raise self._error("@ <timestamp> may not be set multiple times", token)
        target.at = at

    # Primary expressions

    def _parse_primary(self) -> Expr:
        token = self._current_token()
        if token is None:
            raise self._unexpected()

        if token.type == 'NUMBER':
            self._consume()
            return NumberLiteral(_parse_number(token.value))
        if token.type == 'STRING':
            self._consume()
            return StringLiteral(self._unquote(token))
        if token.type == 'LEFT_PAREN':
            self._consume()
            expr = self._parse_expr(0)
            self._consume('RIGHT_PAREN', ')')
            return ParenExpr(expr)
        if token.type == 'LEFT_BRACE':
            return self._parse_vector_selector("")
        if token.type == 'IDENTIFIER':
            word = token.value.lower()
            following = self._peek_token()
            if word in AGGREGATORS and following is not None and (
                    following.type == 'LEFT_PAREN'
                    or (following.type == 'IDENTIFIER'
                        and following.value.lower() in ('by', 'without'))):
                return self._parse_aggregate()
            if following is not None and following.type == 'LEFT_PAREN':
                return self._parse_call()
            if word in ('inf', 'nan'):
                self._consume()
                return NumberLiteral(float(word))
            self._consume()
            return self._parse_vector_selector(token.value)
        raise self._unexpected()

    def _parse_call(self) -> Call:
        name_token = self._consume('IDENTIFIER')
        func = FUNCTIONS.get(name_token.value)
        if func is None:
            raise self._error(f"unknown function with name \"{name_token.value}\"", name_token)
        self._consume('LEFT_PAREN', '(')
        args: List[Expr] = []
        if not self._at('RIGHT_PAREN'):
            args.append(self._parse_expr(0))
            while self._at('COMMA'):
                self._consume()
                if self._at('RIGHT_PAREN'):
                    break
                args.append(self._parse_expr(0))
        self._consume('RIGHT_PAREN', ')')
        call = Call(func, args)
        self._check_call(call, name_token)
        return call

    def _check_call(self, call: Call, token: Token) -> None:
        func = call.func
        declared = len(func.arg_types)
        given = len(call.args)
        if func.variadic == 0:
            if declared != given:
                raise self._error(
                    f"expected {declared} argument(s) in call to \"{func.name}\", got {given}",
                    token)
        else:
            minimum = declared - 1
            if given < minimum:
                raise self._error(
                    f"expected at least {minimum} argument(s) in call to \"{func.name}\", "
                    f"got {given}", token)
            maximum = minimum + func.variadic
            if func.variadic > 0 and given > maximum:
                raise self._error(
                    f"expected at most {maximum} argument(s) in call to \"{func.name}\", "
                    f"got {given}", token)
        for index, arg in enumerate(call.args):
            expected = func.arg_types[min(index, declared - 1)]
            if arg.type != expected:
                raise self._error(
                    f"expected type {expected} in call to function \"{func.name}\", "
                    f"got {arg.type}", token)

    def _parse_aggregate(self) -> AggregateExpr:
        op_token = self._consume('IDENTIFIER')
        op = op_token.value.lower()
        grouping: List[str] = []
        without = False
        has_grouping = False
        if self._at_keyword('by', 'without'):
            without = self._consume().value.lower() == 'without'
            grouping = self._parse_label_list()
            has_grouping = True

        self._consume('LEFT_PAREN', '(')
        args: List[Expr] = []
        if not self._at('RIGHT_PAREN'):
            args.append(self._parse_expr(0))
            while self._at('COMMA'):
                self._consume()
                if self._at('RIGHT_PAREN'):
                    break
                args.append(self._parse_expr(0))
        self._consume('RIGHT_PAREN', ')')

        if self._at_keyword('by', 'without'):
            if has_grouping:
                raise self._unexpected()
            without = self._consume().value.lower() == 'without'
            grouping = self._parse_label_list()

        expected = 2 if op in PARAM_AGGREGATORS else 1
        if len(args) != expected:
            raise self._error(
                f"wrong number of arguments for aggregate expression provided, "
                f"expected {expected}, got {len(args)}", op_token)

        param = args[0] if expected == 2 else None
        expr = args[-1]
        if expr.type != VECTOR:
            raise self._error(
                f"expected type {VECTOR} in aggregation expression, got {expr.type}", op_token)
        if param is not None:
            wanted = STRING if op == 'count_values' else SCALAR
            if param.type != wanted:
                raise self._error(
                    f"expected type {wanted} in aggregation parameter, got {param.type}",
                    op_token)
        return AggregateExpr(op, expr, param, grouping, without)

    def _parse_label_list(self) -> List[str]:
        self._consume('LEFT_PAREN', '(')
        labels: List[str] = []
        while not self._at('RIGHT_PAREN'):
            token = self._consume('IDENTIFIER', 'label')
            if not LABEL_NAME.match(token.value):
                raise self._error(f"invalid label name \"{token.value}\"", token)
            labels.append(token.value)
            if not self._at('COMMA'):
                break
            self._consume()
        self._consume('RIGHT_PAREN', ')')
        return labels

    def _parse_vector_selector(self, name: str) -> VectorSelector:
        selector = VectorSelector(name=name)
        start = self._current_token()
        if self._at('LEFT_BRACE'):
            selector.matchers = self._parse_matchers()

        name_matchers = [m for m in selector.matchers if m.name == '__name__']
        if name:
            if name_matchers:
                raise self._error("metric name must not be set twice", start)
        elif len(name_matchers) == 1 and name_matchers[0].type == MatchType.EQUAL:
            selector.name = name_matchers[0].value
            selector.matchers = [m for m in selector.matchers if m.name != '__name__']

        if not selector.name and not any(not m.matches("") for m in selector.matchers):
            raise self._error("vector selector must contain at least one non-empty matcher",
                              start)
        return selector

    def _parse_matchers(self) -> List[Matcher]:
        self._consume('LEFT_BRACE')
        matchers: List[Matcher] = []
        while not self._at('RIGHT_BRACE'):
            name_token = self._consume('IDENTIFIER', 'label matching')
            if not LABEL_NAME.match(name_token.value):
                raise self._error(f"invalid label name \"{name_token.value}\"", name_token)
            op_token = self._current_token()
            if op_token is None or op_token.type not in MATCH_TYPES:
                raise self._unexpected("label matching operator")
            self._consume()
            value_token = self._consume('STRING', 'string')
            matcher = Matcher(name_token.value, MATCH_TYPES[op_token.type],
                              self._unquote(value_token))
            if matcher.type.is_regex:
                self._check_regex(matcher.value, value_token)
            matchers.append(matcher)
            if not self._at('COMMA'):
                break
            self._consume()
        self._consume('RIGHT_BRACE', '}')
        return matchers

    def _unquote(self, token: Token) -> str:
        try:
            return unquote(token.value)
        except ValueError as e:
            raise self._error(f"syntax error: {e}", token)


def _parse_number(text: str) -> float:
    if text.lower().startswith('0x'):
        return float(int(text, 16))
    return float(text)


def tokenize(text: str) -> List[Token]:
    return PromQLTokenizer(text).get_tokens()


def parse_promql(text: str) -> Expr:
    """Parse a PromQL expression.

    Args:
        text: The expression

    Returns:
        The root node of the expression tree

    Raises:
        GrammarParseError: If the expression is malformed or mistyped
    """
    return PromQLParser(tokenize(text), text).parse()

