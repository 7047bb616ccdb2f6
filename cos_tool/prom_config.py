"""
Strict Prometheus server configuration checking.

The sections the rule tooling cares about are modelled field by field and
reject unknown keys. Service discovery blocks and the less common top level
sections are accepted as opaque mappings.
"""

import logging
import re
from typing import Any, Dict, List, Optional

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from .durations import DurationError, parse_duration
from .errors import ConfigError, format_validation_error

logger = logging.getLogger(__name__)

DEFAULT_SCRAPE_INTERVAL = "1m"
DEFAULT_SCRAPE_TIMEOUT = "10s"

RELABEL_ACTIONS = {
    'replace', 'keep', 'drop', 'keepequal', 'dropequal', 'hashmod',
    'labelmap', 'labeldrop', 'labelkeep', 'lowercase', 'uppercase',
}

LABEL_NAME_RE = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*$')


def _duration(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value)
    if value == "0":
        return value
    try:
        parse_duration(value)
    except DurationError as exc:
        raise ValueError(str(exc)) from exc
    return value


def _millis(value: str) -> int:
    return 0 if value == "0" else parse_duration(value)


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class GlobalConfig(StrictModel):
    scrape_interval: str = DEFAULT_SCRAPE_INTERVAL
    scrape_timeout: str = DEFAULT_SCRAPE_TIMEOUT
    scrape_protocols: Optional[List[str]] = None
    evaluation_interval: str = DEFAULT_SCRAPE_INTERVAL
    rule_query_offset: Optional[str] = None
    external_labels: Dict[str, str] = Field(default_factory=dict)
    query_log_file: Optional[str] = None
    scrape_failure_log_file: Optional[str] = None
    body_size_limit: Optional[str] = None
    sample_limit: Optional[int] = None
    label_limit: Optional[int] = None
    label_name_length_limit: Optional[int] = None
    label_value_length_limit: Optional[int] = None
    target_limit: Optional[int] = None
    keep_dropped_targets: Optional[int] = None
    metric_name_validation_scheme: Optional[str] = None
    metric_name_escaping_scheme: Optional[str] = None

    @field_validator('scrape_interval', 'scrape_timeout', 'evaluation_interval',
                     'rule_query_offset', mode='before')
    @classmethod
    def _durations(cls, value: Any) -> Optional[str]:
        return _duration(value)

    @field_validator('external_labels')
    @classmethod
    def _label_names(cls, value: Dict[str, str]) -> Dict[str, str]:
        for name in value:
            if not LABEL_NAME_RE.match(name):
                raise ValueError(f"{name!r} is not a valid label name")
        return value

    @model_validator(mode='after')
    def _timeout_within_interval(self) -> 'GlobalConfig':
        if _millis(self.scrape_timeout) > _millis(self.scrape_interval):
            raise ValueError("global scrape timeout greater than scrape interval")
        return self


class RelabelConfig(StrictModel):
    source_labels: List[str] = Field(default_factory=list)
    separator: str = ";"
    target_label: Optional[str] = None
    regex: str = "(.*)"
    modulus: Optional[int] = None
    replacement: str = "$1"
    action: str = "replace"

    @field_validator('regex', mode='before')
    @classmethod
    def _regex(cls, value: Any) -> str:
        value = str(value)
        try:
            re.compile(f"^(?:{value})$")
        except re.error as exc:
            raise ValueError(f"error parsing regexp: {exc}") from exc
        return value

    @field_validator('action')
    @classmethod
    def _action(cls, value: str) -> str:
        if value.lower() not in RELABEL_ACTIONS:
            raise ValueError(f"unknown relabel action {value!r}")
        return value.lower()

    @model_validator(mode='after')
    def _required_fields(self) -> 'RelabelConfig':
        if self.action in ('replace', 'hashmod', 'lowercase', 'uppercase',
                           'keepequal', 'dropequal') and not self.target_label:
            raise ValueError(f"relabel configuration for {self.action} action requires "
                             "'target_label' value")
        if self.action == 'hashmod' and not self.modulus:
            raise ValueError("relabel configuration for hashmod requires non-zero modulus")
        return self


class StaticConfig(StrictModel):
    targets: List[str] = Field(default_factory=list)
    labels: Dict[str, str] = Field(default_factory=dict)


class ScrapeConfig(StrictModel):
    """One ``scrape_configs`` entry; ``*_sd_configs`` blocks are kept opaque."""
    job_name: str
    honor_labels: bool = False
    honor_timestamps: bool = True
    track_timestamps_staleness: bool = False
    scheme: str = "http"
    params: Dict[str, List[str]] = Field(default_factory=dict)
    scrape_interval: Optional[str] = None
    scrape_timeout: Optional[str] = None
    scrape_protocols: Optional[List[str]] = None
    fallback_scrape_protocol: Optional[str] = None
    enable_compression: bool = True
    metrics_path: str = "/metrics"
    basic_auth: Optional[Dict[str, Any]] = None
    authorization: Optional[Dict[str, Any]] = None
    oauth2: Optional[Dict[str, Any]] = None
    bearer_token: Optional[str] = None
    bearer_token_file: Optional[str] = None
    tls_config: Optional[Dict[str, Any]] = None
    proxy_url: Optional[str] = None
    no_proxy: Optional[str] = None
    proxy_from_environment: bool = False
    proxy_connect_header: Optional[Dict[str, Any]] = None
    follow_redirects: bool = True
    enable_http2: bool = True
    sample_limit: int = 0
    label_limit: int = 0
    label_name_length_limit: int = 0
    label_value_length_limit: int = 0
    target_limit: int = 0
    keep_dropped_targets: int = 0
    body_size_limit: Optional[str] = None
    scrape_classic_histograms: bool = False
    always_scrape_classic_histograms: bool = False
    convert_classic_histograms_to_nhcb: bool = False
    native_histogram_bucket_limit: int = 0
    native_histogram_min_bucket_factor: float = 0
    metric_name_validation_scheme: Optional[str] = None
    metric_name_escaping_scheme: Optional[str] = None
    static_configs: List[StaticConfig] = Field(default_factory=list)
    relabel_configs: List[RelabelConfig] = Field(default_factory=list)
    metric_relabel_configs: List[RelabelConfig] = Field(default_factory=list)
    service_discovery: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)

    @model_validator(mode='before')
    @classmethod
    def _collect_service_discovery(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        discovery = {key: data.pop(key) for key in list(data) if key.endswith('_sd_configs')}
        if discovery:
            data['service_discovery'] = discovery
        return data

    @field_validator('job_name')
    @classmethod
    def _job_name(cls, value: str) -> str:
        if not value:
            raise ValueError("job_name is empty")
        return value

    @field_validator('scrape_interval', 'scrape_timeout', mode='before')
    @classmethod
    def _durations(cls, value: Any) -> Optional[str]:
        return _duration(value)

    @field_validator('scheme')
    @classmethod
    def _scheme(cls, value: str) -> str:
        if value not in ('http', 'https'):
            raise ValueError(f"unknown scrape scheme {value!r}")
        return value


class AlertingConfig(StrictModel):
    alert_relabel_configs: List[RelabelConfig] = Field(default_factory=list)
    alertmanagers: List[Dict[str, Any]] = Field(default_factory=list)


class PrometheusConfig(StrictModel):
    """Top level of a Prometheus server configuration file."""
    global_: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    alerting: Optional[AlertingConfig] = None
    rule_files: List[str] = Field(default_factory=list)
    scrape_config_files: List[str] = Field(default_factory=list)
    scrape_configs: List[ScrapeConfig] = Field(default_factory=list)
    remote_write: List[Dict[str, Any]] = Field(default_factory=list)
    remote_read: List[Dict[str, Any]] = Field(default_factory=list)
    storage: Optional[Dict[str, Any]] = None
    tracing: Optional[Dict[str, Any]] = None
    otlp: Optional[Dict[str, Any]] = None
    runtime: Optional[Dict[str, Any]] = None

    @field_validator('global_', 'rule_files', 'scrape_config_files', 'scrape_configs',
                     'remote_write', 'remote_read', mode='before')
    @classmethod
    def _empty_sections(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return {} if info.field_name == 'global_' else []
        return value

    @model_validator(mode='after')
    def _scrape_jobs(self) -> 'PrometheusConfig':
        seen = set()
        for scrape in self.scrape_configs:
            if scrape.job_name in seen:
                raise ValueError(
                    f"found multiple scrape configs with job name {scrape.job_name!r}")
            seen.add(scrape.job_name)

            interval = scrape.scrape_interval or self.global_.scrape_interval
            timeout = scrape.scrape_timeout
            if timeout is None:
                continue
            if _millis(timeout) > _millis(interval):
                raise ValueError("scrape timeout greater than scrape interval for scrape "
                                 f"config with job name {scrape.job_name!r}")
        return self


def load_config(content: str, filename: str = "<string>") -> PrometheusConfig:
    """Strictly load Prometheus configuration text.

    Raises:
        ConfigError: On malformed YAML, unknown keys or invalid values
    """
    try:
        document = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise ConfigError(f"parsing YAML file {filename}: {exc}") from exc

    if document is None:
        document = {}
    if not isinstance(document, dict):
        raise ConfigError(f"parsing YAML file {filename}: configuration must be a mapping")
    try:
        return PrometheusConfig.model_validate(document)
    except ValidationError as exc:
        raise ConfigError(f"parsing YAML file {filename}: {format_validation_error(exc)}") from exc


def validate_config(filename: str) -> PrometheusConfig:
    """Read and strictly load a Prometheus configuration file.

    Raises:
        ConfigError: If the file cannot be read or is invalid
    """
    try:
        with open(filename, 'r', encoding='utf-8') as f:
            content = f.read()
    except OSError as exc:
        raise ConfigError(f"could not read {filename}: {exc}") from exc

    config = load_config(content, filename)
    logger.debug("Loaded %s: %d scrape config(s)", filename, len(config.scrape_configs))
    return config
