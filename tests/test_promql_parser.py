"""
Unit tests for the PromQL parser and printer.

Tests tree shapes, canonical printing, operator precedence and the type
checks applied while parsing.
"""

import pytest

from cos_tool.errors import GrammarParseError
from cos_tool.models import MatchType, walk
from cos_tool.promql import parse_promql
from cos_tool.promql.ast import (
    AggregateExpr,
    BinaryExpr,
    Call,
    MatrixSelector,
    NumberLiteral,
    SubqueryExpr,
    VectorSelector,
)


class TestParsing:
    """Test cases for tree construction."""

    def test_parse_selector(self):
        """Test a metric name with matchers of each type."""
        expr = parse_promql('http_requests_total{job="api",code!="200",path=~"/a.*",m!~"GET"}')
        assert isinstance(expr, VectorSelector)
        assert expr.name == "http_requests_total"
        assert [m.type for m in expr.matchers] == [
            MatchType.EQUAL, MatchType.NOT_EQUAL, MatchType.REGEX_MATCH, MatchType.REGEX_NOT_MATCH,
        ]

    def test_parse_range_function(self):
        """Test a function over a matrix selector."""
        expr = parse_promql('rate(http_requests_total{job="api"}[5m])')
        assert isinstance(expr, Call)
        assert expr.func.name == "rate"
        assert isinstance(expr.args[0], MatrixSelector)
        assert expr.args[0].range == 300000

    def test_name_matcher_becomes_metric_name(self):
        """Test that a single __name__ equality sets the metric name."""
        expr = parse_promql('{__name__="up",job="a"}')
        assert expr.name == "up"
        assert str(expr) == 'up{job="a"}'

    def test_multiplication_binds_tighter(self):
        """Test arithmetic precedence."""
        expr = parse_promql('1 + 2 * 3')
        assert isinstance(expr, BinaryExpr)
        assert expr.op == '+'
        assert isinstance(expr.rhs, BinaryExpr) and expr.rhs.op == '*'

    def test_power_is_right_associative(self):
        """Test that ^ groups to the right."""
        expr = parse_promql('2 ^ 3 ^ 2')
        assert isinstance(expr.lhs, NumberLiteral)
        assert isinstance(expr.rhs, BinaryExpr)

    def test_negative_number(self):
        """Test that a unary minus folds into a number literal."""
        expr = parse_promql('-1')
        assert isinstance(expr, NumberLiteral)
        assert expr.value == -1

    def test_aggregation_with_parameter(self):
        """Test topk parameter and grouping after the body."""
        expr = parse_promql('topk(5, x) by (job)')
        assert isinstance(expr, AggregateExpr)
        assert expr.param.value == 5
        assert expr.grouping == ["job"]

    def test_subquery(self):
        """Test subquery range and step."""
        expr = parse_promql('max_over_time(rate(x[5m])[30m:1m])')
        subquery = expr.args[0]
        assert isinstance(subquery, SubqueryExpr)
        assert subquery.range == 30 * 60000
        assert subquery.step == 60000

    def test_walk_finds_every_selector(self):
        """Test depth-first traversal over a nested tree."""
        expr = parse_promql('sum(rate(a[5m])) / on(job) sum(rate(b[5m])) > 0.5')
        names = [n.name for n in walk(expr) if isinstance(n, VectorSelector)]
        assert names == ["a", "b"]


class TestPrinting:
    """Test cases for the canonical printed form."""

    @pytest.mark.parametrize("query,expected", [
        ('sum(rate(x[5m])) by (job)', 'sum by (job) (rate(x[5m]))'),
        ('sum without(instance)(x)', 'sum without (instance) (x)'),
        ('topk(5, x)', 'topk(5, x)'),
        ('a + on(x) group_left(y) b', 'a + on (x) group_left (y) b'),
        ('a > bool 1', 'a > bool 1'),
        ('x offset 5m', 'x offset 5m'),
        ('x[90d]', 'x[90d]'),
        ('x[14d]', 'x[2w]'),
        ('rate(x[5m])[30m:1m]', 'rate(x[5m])[30m:1m]'),
        ('rate(x[5m])[30m:]', 'rate(x[5m])[30m:]'),
        ('x @ start()', 'x @ start()'),
        ('(up)', '(up)'),
        ('0.5', '0.5'),
        ('1e3', '1000'),
        ('1e20', '100000000000000000000'),
        ('1e30', '1e+30'),
        ('0.00001', '1e-05'),
        ('2.5e-7', '2.5e-07'),
        ("up{job='single'}", 'up{job="single"}'),
        ('up{b="2", a="1"}', 'up{a="1",b="2"}'),
        ('rate(x[5m]) > 0.5', 'rate(x[5m]) > 0.5'),
        ('x[300]', 'x[5m]'),
    ])
    def test_canonical_form(self, query, expected):
        """Test normalization of spacing, durations and matcher order."""
        assert str(parse_promql(query)) == expected

    def test_printing_is_stable(self):
        """Test that printing a printed expression is a fixed point."""
        printed = str(parse_promql('sum(rate(x{b="1",a="2"}[1h30m] offset 5m)) by (job) > 3'))
        assert str(parse_promql(printed)) == printed


class TestParseErrors:
    """Test cases for invalid expressions."""

    @pytest.mark.parametrize("query,message", [
        ('', "unexpected end of input"),
        ('up +', "unexpected end of input"),
        ('sum(x', "syntax error"),
        ('rate(x)', 'expected type range vector in call to function "rate", got instant vector'),
        ('sum(x[5m])', "expected type instant vector in aggregation expression"),
        ('1 > 2', "comparisons between scalars must use BOOL modifier"),
        ('x and 1', 'set operator "and" not allowed in binary scalar expression'),
        ('{}', "vector selector must contain at least one non-empty matcher"),
        ('{job=~".*"}', "vector selector must contain at least one non-empty matcher"),
        ('up{job=~"("}', "error parsing regexp"),
        ('foo(x)', 'unknown function with name "foo"'),
        ('topk(x)', "wrong number of arguments for aggregate expression"),
        ('x[5m][5m]', "ranges only allowed for vector selectors"),
        ('up{job="a"', "syntax error"),
        ('x[-5m]', "not a valid duration string"),
        ('x offset 5m offset 1m', "offset may not be set multiple times"),
    ])
    def test_invalid(self, query, message):
        """Test the error message for each kind of invalid expression."""
        with pytest.raises(GrammarParseError) as exc_info:
            parse_promql(query)
        assert message in str(exc_info.value)

    def test_error_position(self):
        """Test that errors report a 1-based line and column."""
        with pytest.raises(GrammarParseError) as exc_info:
            parse_promql('up +')
        assert str(exc_info.value) == "parse error at line 1, col 5: syntax error: unexpected end of input"
        assert exc_info.value.line == 1
        assert exc_info.value.column == 5
