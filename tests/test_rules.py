"""
Tests for alerting and recording rule file validation.

Uses the rule files under tests/testdata plus inline documents for the
individual rule shape checks.
"""

from pathlib import Path

import pytest

from cos_tool import LogQLChecker, PromQLChecker
from cos_tool.errors import (
    DecodeError,
    GrammarParseError,
    GroupNameError,
    NameValidityError,
    RuleShapeError,
    RuleValidationError,
    TemplateSyntaxError,
)
from cos_tool.rules import decode_rule_groups

TESTDATA = Path(__file__).parent / "testdata"


def read(path: str) -> bytes:
    return (TESTDATA / path).read_bytes()


def rule_file(rule: str, group: str = "g") -> str:
    """Build a one-group, one-rule document from an indented rule body."""
    return f"groups:\n  - name: {group}\n    rules:\n{rule}"


@pytest.fixture
def promql():
    return PromQLChecker()


@pytest.fixture
def logql():
    return LogQLChecker()


class TestRuleFiles:
    """Test validation of whole rule files."""

    def test_valid_prometheus_rules(self, promql):
        """Test that a well-formed Prometheus rule file passes."""
        result = promql.validate_rules("basic.yaml", read("prom_alerts/basic.yaml"))
        assert result.is_valid
        assert result.error is None
        assert [g.name for g in result.groups.groups] == ["example", "node"]
        result.raise_for_errors()

    def test_valid_loki_rules(self, logql):
        """Test that a well-formed Loki rule file passes."""
        result = logql.validate_rules("basic.yaml", read("loki_alerts/basic.yaml"))
        assert result.is_valid
        assert len(result.groups.groups[0].rules) == 2

    @pytest.mark.parametrize("checker_class,path,name", [
        (PromQLChecker, "prom_alerts/duplicate_group.yaml", "yolo"),
        (LogQLChecker, "loki_alerts/duplicate_group.yaml", "testgroup"),
    ])
    def test_duplicate_group(self, checker_class, path, name):
        """Test that a repeated group name is reported."""
        result = checker_class().validate_rules(path, read(path))
        assert not result.is_valid
        assert isinstance(result.errors[0], GroupNameError)
        assert f'groupname: "{name}" is repeated in the same file' in str(result.error)

    def test_bad_prometheus_expression(self, promql):
        """Test that an unparsable PromQL expression is reported with context."""
        result = promql.validate_rules("bad_expr.yaml", read("prom_alerts/bad_expr.yaml"))
        assert len(result.errors) == 1
        error = result.errors[0]
        assert isinstance(error, GrammarParseError)
        assert str(error).startswith(
            'group "broken", rule 1, "HighErrorRate": could not parse expression '
            "for alert 'HighErrorRate' in group 'broken': parse error")

    def test_bad_loki_expression(self, logql):
        """Test that an unparsable LogQL expression is reported."""
        result = logql.validate_rules("bad_expr.yaml", read("loki_alerts/bad_expr.yaml"))
        assert len(result.errors) == 1
        assert "could not parse expression" in str(result.errors[0])
        assert "syntax error" in str(result.errors[0])

    def test_prometheus_rules_rejected_by_loki(self, logql):
        """Test that PromQL expressions do not pass as LogQL."""
        result = logql.validate_rules("basic.yaml", read("prom_alerts/basic.yaml"))
        assert not result.is_valid

    def test_aggregate_error(self, promql):
        """Test that every violation is folded into one error."""
        content = (
            "groups:\n"
            "  - name: g\n"
            "    rules:\n"
            "      - alert: A\n"
            "        expr: up ==\n"
            "      - record: bad-name\n"
            "        expr: up\n"
            "  - name: g\n"
        )
        result = promql.validate_rules("rules.yaml", content)
        assert len(result.errors) == 3
        message = str(result.error)
        assert message.startswith("error validating rules.yaml: ")
        assert message.count("; ") == 2
        with pytest.raises(RuleValidationError) as exc_info:
            result.raise_for_errors()
        assert exc_info.value.errors == result.errors

    def test_empty_document(self, promql):
        """Test that an empty file has no groups and no errors."""
        result = promql.validate_rules("empty.yaml", b"")
        assert result.is_valid
        assert result.groups.groups == []


class TestDecoding:
    """Test strict decoding of rule files."""

    @pytest.mark.parametrize("content,message", [
        ("groups: [", "while parsing"),
        ("- just\n- a list\n", "rule file must be a mapping"),
        ("groups:\n  - name: g\n    rulez: []\n", "rulez"),
        (rule_file("      - alert: A\n        expr: up\n        foo: bar\n"), "foo"),
        (rule_file("      - alert: A\n        expr: up\n        for: 5 minutes\n"),
         "not a valid duration string"),
        ("groups:\n  - name: g\n    interval: soon\n", "not a valid duration string"),
    ])
    def test_decode_errors(self, promql, content, message):
        """Test that decoding failures are fatal and reported alone."""
        result = promql.validate_rules("rules.yaml", content)
        assert result.groups is None
        assert len(result.errors) == 1
        assert isinstance(result.errors[0], DecodeError)
        assert message in str(result.errors[0])

    def test_scalar_coercion(self):
        """Test that numeric and boolean YAML scalars become strings."""
        groups = decode_rule_groups(rule_file(
            "      - record: r\n        expr: 1\n        labels:\n"
            "          severity: 2\n          paged: true\n"))
        rule = groups.groups[0].rules[0]
        assert rule.expr == "1"
        assert rule.labels == {"severity": "2", "paged": "true"}

    def test_for_alias(self):
        """Test that the YAML 'for' key maps onto the rule."""
        groups = decode_rule_groups(rule_file(
            "      - alert: A\n        expr: up\n        for: 1h30m\n"))
        rule = groups.groups[0].rules[0]
        assert rule.for_ == "1h30m"
        assert rule.for_duration == 5400000
        assert rule.kind == "alert"


class TestRuleChecks:
    """Test the per-rule shape, name and template checks."""

    @pytest.mark.parametrize("body,error_class,message", [
        ("      - record: r\n        alert: a\n        expr: up\n",
         RuleShapeError, 'group "g", rule 1, "r": only one of \'record\' and \'alert\' must be set'),
        ("      - expr: up\n",
         RuleShapeError, 'group "g", rule 1, "": one of \'record\' or \'alert\' must be set'),
        ("      - alert: A\n",
         RuleShapeError, "field 'expr' must be set in rule"),
        ("      - record: r\n        expr: up\n        annotations:\n          summary: s\n",
         RuleShapeError, "invalid field 'annotations' in recording rule"),
        ("      - record: r\n        expr: up\n        for: 5m\n",
         RuleShapeError, "invalid field 'for' in recording rule"),
        ("      - record: r\n        expr: up\n        keep_firing_for: 5m\n",
         RuleShapeError, "invalid field 'keep_firing_for' in recording rule"),
        ("      - record: bad-name\n        expr: up\n",
         NameValidityError, "invalid recording rule name: bad-name"),
        ("      - alert: A\n        expr: up\n        labels:\n          bad-label: x\n",
         NameValidityError, "invalid label name: bad-label"),
        ("      - alert: A\n        expr: up\n        labels:\n          __name__: x\n",
         NameValidityError, "invalid label name: __name__"),
        ("      - alert: A\n        expr: up\n        annotations:\n          bad-key: x\n",
         NameValidityError, "invalid annotation name: bad-key"),
    ])
    def test_rule_violation(self, promql, body, error_class, message):
        """Test each rule-level violation and its message."""
        result = promql.validate_rules("rules.yaml", rule_file(body))
        assert len(result.errors) == 1
        assert isinstance(result.errors[0], error_class)
        assert message in str(result.errors[0])

    def test_zero_for_on_recording_rule(self, promql):
        """Test that an explicit zero 'for' is accepted on a recording rule."""
        result = promql.validate_rules(
            "rules.yaml", rule_file("      - record: r\n        expr: up\n        for: 0s\n"))
        assert result.is_valid

    def test_empty_group_name(self, promql):
        """Test that a group must be named."""
        result = promql.validate_rules("rules.yaml", "groups:\n  - rules: []\n")
        assert str(result.errors[0]) == "group 0: Groupname must not be empty"

    def test_template_error(self, promql):
        """Test that a malformed annotation template names the key."""
        body = ('      - alert: InstanceDown\n        expr: up == 0\n        annotations:\n'
                '          summary: "{{ $labels.instance "\n')
        result = promql.validate_rules("rules.yaml", rule_file(body))
        error = result.errors[0]
        assert isinstance(error, TemplateSyntaxError)
        assert error.key == "summary"
        assert str(error) == ('group "g", rule 1, "InstanceDown": annotation "summary": '
                              'template: __alert_InstanceDown:1: unclosed action')

    def test_label_templates_checked_first(self, promql):
        """Test that labels are checked before annotations."""
        body = ('      - alert: A\n        expr: up\n        labels:\n'
                '          severity: "{{ nosuch }}"\n        annotations:\n'
                '          summary: "{{ end }}"\n')
        result = promql.validate_rules("rules.yaml", rule_file(body))
        assert len(result.errors) == 2
        assert 'label "severity"' in str(result.errors[0])
        assert 'annotation "summary"' in str(result.errors[1])

    def test_recording_rule_templates_not_checked(self, promql):
        """Test that recording rule labels are not parsed as templates."""
        body = '      - record: r\n        expr: up\n        labels:\n          x: "{{"\n'
        result = promql.validate_rules("rules.yaml", rule_file(body))
        assert result.is_valid

    def test_every_violation_of_a_rule_is_reported(self, promql):
        """Test that a parse error does not hide name and template errors."""
        body = ('      - alert: A\n        expr: "up{"\n        labels:\n'
                '          bad-name: x\n        annotations:\n'
                '          summary: "{{ .Foo"\n          description: "{{ end }}"\n')
        result = promql.validate_rules("rules.yaml", rule_file(body))
        assert [type(e) for e in result.errors] == [
            GrammarParseError,
            NameValidityError,
            TemplateSyntaxError,
            TemplateSyntaxError,
        ]
        assert "could not parse expression for alert 'A'" in str(result.errors[0])
        assert "invalid label name: bad-name" in str(result.errors[1])
        assert [e.key for e in result.errors[2:]] == ["description", "summary"]

    def test_recording_rule_violations_accumulate(self, promql):
        """Test that a recording rule reports its name and label errors together."""
        body = ('      - record: bad-name\n        expr: up\n        labels:\n'
                '          bad-label: x\n')
        result = promql.validate_rules("rules.yaml", rule_file(body))
        assert [str(e) for e in result.errors] == [
            'group "g", rule 1, "bad-name": invalid recording rule name: bad-name',
            'group "g", rule 1, "bad-name": invalid label name: bad-label',
        ]
