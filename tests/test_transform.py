"""
Tests for label matcher injection through the dialect checkers.

Covers plain PromQL and LogQL expressions, template variables in every
supported slot, rejected variable positions and parse failures.
"""

import pytest

from cos_tool import (
    GrammarParseError,
    LogQLChecker,
    PromQLChecker,
    StructuralPositionError,
    get_checker,
    get_label_matchers,
)


@pytest.fixture
def promql():
    return PromQLChecker()


@pytest.fixture
def logql():
    return LogQLChecker()


class TestPromQLTransform:
    """Test matcher injection into PromQL expressions."""

    @pytest.mark.parametrize("query,matchers,expected", [
        ('rate(metric[5m]) > 0.5', {"bar": "baz"}, 'rate(metric{bar="baz"}[5m]) > 0.5'),
        ('metric', {"bar": "baz"}, 'metric{bar="baz"}'),
        ('up == 0', {"cool": "breeze", "hot": "sunrays"}, 'up{cool="breeze",hot="sunrays"} == 0'),
        ('absent(up{job="prometheus"})', {"model": "lma"},
         'absent(up{job="prometheus",model="lma"})'),
        ('sum by(consumergroup) (kafka_consumergroup_lag) > 50', {"firstname": "Franz"},
         'sum by (consumergroup) (kafka_consumergroup_lag{firstname="Franz"}) > 50'),
    ])
    def test_injects_into_every_selector(self, promql, query, matchers, expected):
        """Test that matchers are added and labels printed in sorted order."""
        assert promql.transform(query, matchers) == expected

    def test_existing_label_is_not_overwritten(self, promql):
        """Test that a label already constrained by the selector is left alone."""
        result = promql.transform('up{cool="fire"}', {"cool": "stuff"})
        assert result == 'up{cool="fire"}'

    def test_only_missing_labels_are_added(self, promql):
        """Test that a partially overlapping matcher set adds only new labels."""
        result = promql.transform('up{cool="fire"}', {"cool": "stuff", "dance": "macarena"})
        assert result == 'up{cool="fire",dance="macarena"}'

    def test_binary_operands_both_receive_matchers(self, promql):
        """Test that both sides of a binary operation are visited."""
        result = promql.transform('up{job="a"} / on(job) down', {"env": "prod"})
        assert result == 'up{env="prod",job="a"} / on (job) down{env="prod"}'

    def test_empty_matchers_normalize_only(self, promql):
        """Test that no matchers still yields the canonical form."""
        result = promql.transform('sum(rate(x[5m])) by (job)', {})
        assert result == 'sum by (job) (rate(x[5m]))'

    def test_transform_is_idempotent(self, promql):
        """Test that transforming a transformed query changes nothing."""
        matchers = {"juju_model": "lma", "juju_unit": "prom/0"}
        once = promql.transform('rate(up{job="$job"}[$__rate_interval])', matchers)
        assert promql.transform(once, matchers) == once


class TestPromQLTemplateVariables:
    """Test that dashboard variables survive PromQL transformation."""

    @pytest.mark.parametrize("query,expected", [
        ('up{job="$job"}', 'up{env="prod",job="$job"}'),
        ('rate(up{job="test"}[$__rate_interval])',
         'rate(up{env="prod",job="test"}[$__rate_interval])'),
        ('otelcol_receiver${suffix_total}{job="test"}',
         'otelcol_receiver${suffix_total}{env="prod",job="test"}'),
        ('otelcol_process${suffix1}_uptime${suffix2}{job="test"}',
         'otelcol_process${suffix1}_uptime${suffix2}{env="prod",job="test"}'),
        ('up{job=~"$job.*"}', 'up{env="prod",job=~"$job.*"}'),
        ('topk($limit, up)', 'topk($limit, up{env="prod"})'),
        ('up{job=$job}', 'up{env="prod",job=$job}'),
        ('up offset $shift', 'up{env="prod"} offset $shift'),
        ('up{a=$x} + label_replace(up, "d", "$x", "s", "(.*)")',
         'up{a=$x,env="prod"} + label_replace(up{env="prod"}, "d", "$x", "s", "(.*)")'),
        ('up{a=$x,b="$x"}', 'up{a=$x,b="$x",env="prod"}'),
        ('label_replace(up, "dst", "$1", "src", "(.*)")',
         'label_replace(up{env="prod"}, "dst", "$1", "src", "(.*)")'),
    ])
    def test_variable_is_restored(self, promql, query, expected):
        """Test each supported variable slot."""
        assert promql.transform(query, {"env": "prod"}) == expected

    def test_real_world_dashboard_query(self, promql):
        """Test a dashboard panel combining metric, matcher and range variables."""
        query = ('sum(rate(otelcol_receiver_accepted${suffix_total}'
                 '{receiver=~"$receiver",job="$job"}[$__rate_interval])) by (receiver)')
        expected = ('sum by (receiver) (rate(otelcol_receiver_accepted${suffix_total}'
                    '{cluster="prod",job="$job",receiver=~"$receiver"}[$__rate_interval]))')
        assert promql.transform(query, {"cluster": "prod"}) == expected

    def test_several_matchers_with_variables(self, promql):
        """Test multiple injected labels around variable-valued matchers."""
        query = ('sum(rate(otelcol_receiver_accepted${suffix_total}'
                 '{receiver=~"$receiver",job="$job"}[$__rate_interval])) by (receiver)')
        expected = ('sum by (receiver) (rate(otelcol_receiver_accepted${suffix_total}'
                    '{cluster="prod",job="$job",namespace="monitoring",receiver=~"$receiver"}'
                    '[$__rate_interval]))')
        result = promql.transform(query, {"cluster": "prod", "namespace": "monitoring"})
        assert result == expected

    def test_distinct_range_variables(self, promql):
        """Test two range variables where one name prefixes the other."""
        query = ('rate(metric${suffix_total}{job="$job"}[$__rate_interval]) + '
                 'rate(other${suffix_count}{instance="$instance"}[$__rate_interval_ms])')
        expected = ('rate(metric${suffix_total}{cluster="prod",job="$job"}[$__rate_interval]) + '
                    'rate(other${suffix_count}{cluster="prod",instance="$instance"}'
                    '[$__rate_interval_ms])')
        assert promql.transform(query, {"cluster": "prod"}) == expected

    def test_all_slot_kinds_in_one_query(self, promql):
        """Test metric, duration and matcher variables together."""
        query = ('rate(metric${v1}_name${v2}{job="$job",env="$env"}[$__interval]) / '
                 'rate(other${v3}{instance="$instance"}[$__rate_interval])')
        expected = ('rate(metric${v1}_name${v2}{cluster="prod",env="$env",job="$job"}'
                    '[$__interval]) / rate(other${v3}{cluster="prod",instance="$instance"}'
                    '[$__rate_interval])')
        result = promql.transform(query, {"cluster": "prod"})
        assert result == expected
        assert result.count("$") == query.count("$")


class TestPromQLTransformErrors:
    """Test rejected variable positions and parse failures."""

    @pytest.mark.parametrize("query,message", [
        ('${metric:value}(up{job="test"}[5m])', "function name positions are not supported"),
        ('sum(rate(up[5m])) by ($grouping)', "grouping (by/without) positions are not supported"),
        ('${prefix}_metric{job="test"}', "metric name prefix positions are not supported"),
        ('rate($metric[5m])', "metric name prefix positions are not supported"),
    ])
    def test_unsupported_positions(self, promql, query, message):
        """Test that unsupported variable slots fail with the original query attached."""
        with pytest.raises(StructuralPositionError) as exc_info:
            promql.transform(query, {"env": "prod"})
        assert message in str(exc_info.value)
        assert exc_info.value.query == query

    def test_parse_error_carries_original_query(self, promql):
        """Test that a parse error reports the query as written, not the encoded one."""
        query = 'rate(up{job="$job"}[$__rate_interval]'
        with pytest.raises(GrammarParseError) as exc_info:
            promql.transform(query, {"env": "prod"})
        assert exc_info.value.query == query
        assert "parse error" in str(exc_info.value)

    def test_unknown_function(self, promql):
        """Test that an unknown function name is a parse error."""
        with pytest.raises(GrammarParseError, match="unknown function"):
            promql.transform('nosuchfunc(up)', {})


class TestLogQLTransform:
    """Test matcher injection into LogQL expressions."""

    @pytest.mark.parametrize("query,matchers,expected", [
        ('sum(rate({app="foo", env="production"} |= "error" [5m])) by (job) ', {"bar": "baz"},
         'sum by(job)(rate({app="foo", env="production", bar="baz"} |= "error"[5m]))'),
        ('rate({filename="test"}[1m])', {"bar": "baz"}, 'rate({filename="test", bar="baz"}[1m])'),
        ('{job="loki"} !~ ".+"', {"model": "lma"}, '{job="loki", model="lma"} !~ ".+"'),
        ('{cool="breeze"} |= "weather"', {"hot": "sunrays", "dance": "macarena"},
         '{cool="breeze", dance="macarena", hot="sunrays"} |= "weather"'),
    ])
    def test_injects_after_existing_matchers(self, logql, query, matchers, expected):
        """Test that new matchers follow the written ones, in name order."""
        assert logql.transform(query, matchers) == expected

    def test_empty_matchers(self, logql):
        """Test that an empty injection set leaves a selector unchanged."""
        assert logql.transform('{job="test"}', {}) == '{job="test"}'

    def test_complex_expression(self, logql):
        """Test a comparison over an aggregation of a range."""
        result = logql.transform(
            'sum by(job) (rate({filename="/var/log/app.log", level="error"}[5m])) > 10',
            {"model": "production", "region": "us-west"})
        assert result == ('sum by(job)(rate({filename="/var/log/app.log", level="error", '
                          'model="production", region="us-west"}[5m])) > 10')

    def test_special_characters_in_matchers(self, logql):
        """Test that unusual names and values are injected and quoted."""
        matchers = {
            "special-chars": "test@#$%^&*()",
            "unicode": "héllo-wörld",
            "quotes": '"quoted string"',
            "spaces": "value with spaces",
        }
        result = logql.transform('{job="test"}', matchers)
        for key in matchers:
            assert key in result
        assert 'quotes="\\"quoted string\\""' in result

    def test_template_variables(self, logql):
        """Test matcher, filter and range variables in a LogQL query."""
        query = 'sum(count_over_time({job="$job"} |= "$search" [$__interval]))'
        expected = 'sum(count_over_time({job="$job", env="prod"} |= "$search"[$__interval]))'
        assert logql.transform(query, {"env": "prod"}) == expected

    def test_variable_bare_in_matcher_and_quoted_in_filter(self, logql):
        """Test that the line filter string keeps its quotes."""
        result = logql.transform('{a=$x} |= "$x"', {"env": "prod"})
        assert result == '{a=$x, env="prod"} |= "$x"'

    @pytest.mark.parametrize("query", [
        '{job="test"',
        '{job="test"} =~ "["',
        'rate({job="test"}[5m] |',
        'sum(rate({job="test"}[5m]))))',
        '',
        'sum by(job)() > 0',
    ])
    def test_syntax_errors(self, logql, query):
        """Test that malformed queries fail with a syntax error."""
        with pytest.raises(GrammarParseError) as exc_info:
            logql.transform(query, {"env": "prod"})
        assert "syntax error" in str(exc_info.value)
        assert exc_info.value.query == query

    def test_negative_duration(self, logql):
        """Test that a negative range is rejected as a duration."""
        with pytest.raises(GrammarParseError, match="not a valid duration string"):
            logql.transform('rate({job="test"}[-5m])', {"env": "prod"})


class TestCheckerDispatch:
    """Test checker lookup and matcher flag parsing."""

    def test_get_checker_by_name(self):
        """Test dialect names, case-insensitively."""
        assert isinstance(get_checker("promql"), PromQLChecker)
        assert isinstance(get_checker("LogQL"), LogQLChecker)

    def test_unknown_format_falls_back_to_promql(self, caplog):
        """Test that an unknown dialect logs a warning and uses PromQL."""
        checker = get_checker("influxql")
        assert isinstance(checker, PromQLChecker)
        assert "falling back to promql" in caplog.text

    def test_label_matcher_flags(self):
        """Test parsing of name=value flags."""
        assert get_label_matchers(["a=b", "juju_unit=prom/0"]) == {"a": "b", "juju_unit": "prom/0"}
        assert get_label_matchers([]) == {}

    @pytest.mark.parametrize("flag", ["novalue", "a=b=c"])
    def test_malformed_label_matcher(self, flag):
        """Test that a flag must split into exactly two parts."""
        with pytest.raises(ValueError, match="malformed label injector"):
            get_label_matchers([flag])
