"""
Tests for the Go text/template syntax checker.
"""

import pytest

from cos_tool.errors import TemplateSyntaxError
from cos_tool.templates import check_alert_template, parse_test


class TestValidTemplates:
    """Test templates that must be accepted."""

    @pytest.mark.parametrize("text", [
        "plain text",
        "{{ $labels.instance }} is down",
        "{{ $value | humanize }}",
        "{{ printf \"%.2f\" $value }}",
        "{{ if gt $value 0.5 }}high{{ else if gt $value 0.1 }}medium{{ else }}low{{ end }}",
        "{{ range $i, $v := .Alerts }}{{ $i }}={{ $v }}{{ end }}",
        "{{ range .Alerts }}{{ if .Labels.job }}{{ break }}{{ end }}{{ end }}",
        "{{ with query \"up\" }}{{ . | first | value }}{{ end }}",
        "{{ with $x := 1 }}{{ $x }}{{ else with 2 }}two{{ end }}",
        "{{- /* comment */ -}}",
        "{{- $labels.job -}}",
        "{{ $externalLabels.cluster }}: {{ ($labels.instance | stripPort) }}",
        "{{ define \"t\" }}{{ . }}{{ end }}{{ template \"t\" $labels }}",
    ])
    def test_accepted(self, text):
        """Test well-formed alert templates."""
        check_alert_template(text, "HighLatency")

    def test_custom_function_set(self):
        """Test that the callable function set can be replaced."""
        parse_test("{{ myfunc 1 }}", functions={"myfunc"})
        with pytest.raises(TemplateSyntaxError):
            parse_test("{{ humanize 1 }}", functions={"myfunc"})


class TestInvalidTemplates:
    """Test templates that must be rejected."""

    @pytest.mark.parametrize("text,message", [
        ("{{ $labels.instance ", "unclosed action"),
        ("{{ if true }}x", "unexpected EOF"),
        ("{{ end }}", "unexpected {{end}}"),
        ("{{ else }}", "unexpected {{else}}"),
        ("{{ $undefined }}", 'undefined variable "$undefined"'),
        ("{{ nosuchfunc 1 }}", 'function "nosuchfunc" not defined'),
        ("{{ break }}", "{{break}} outside {{range}}"),
        ("{{ }}", "missing value for command"),
        ("{{ \"unterminated }}", "unterminated quoted string"),
        ("{{ nil }}", "nil is not a command"),
        ("{{ if true }}{{ else }}{{ else }}{{ end }}", "expected end; found {{else}}"),
        ("{{ (1 }}", "unclosed left paren"),
        ("{{ range $x := .A }}{{ end }}{{ $x }}", 'undefined variable "$x"'),
    ])
    def test_rejected(self, text, message):
        """Test each kind of syntax error."""
        with pytest.raises(TemplateSyntaxError) as exc_info:
            check_alert_template(text, "HighLatency")
        assert message in str(exc_info.value)

    def test_error_names_template_and_line(self):
        """Test the Go-style error prefix."""
        with pytest.raises(TemplateSyntaxError) as exc_info:
            parse_test("first line\n{{ end }}")
        assert str(exc_info.value) == "template: test:2: unexpected {{end}}"

    def test_alert_template_name(self):
        """Test that alert templates are named after the alert."""
        with pytest.raises(TemplateSyntaxError, match="template: __alert_InstanceDown:1:"):
            check_alert_template("{{ $labels.instance ", "InstanceDown")
