import textwrap
from datetime import timedelta

import pytest

from percas.config import Config, ConfigError, StandaloneServerConfig, default_data_dir, default_dir
from percas.loader import load_config

DEV_CONFIG = textwrap.dedent(
    """
    [server]
    mode = "standalone"
    listen_addr = "0.0.0.0:7654"
    dir = "/tmp/percas"
    advertise_addr = "127.0.0.1:7654"

    [storage]
    data_dir = "/tmp/percas/data"
    disk_capacity = 536870912

    [telemetry.logs.file]
    filter = "INFO"
    dir = "logs"
    max_files = 64

    [telemetry.logs.stderr]
    filter = "INFO"

    [telemetry.logs.opentelemetry]
    filter = "INFO"
    otlp_endpoint = "http://127.0.0.1:4317"

    [telemetry.traces]
    capture_log_filter = "INFO"

    [telemetry.traces.opentelemetry]
    otlp_endpoint = "http://127.0.0.1:4317"

    [telemetry.metrics.opentelemetry]
    otlp_endpoint = "http://127.0.0.1:4317"
    push_interval = "30s"
    """
)

MINIMAL_CONFIG = textwrap.dedent(
    """
    [server]
    mode = "standalone"

    [storage]
    disk_capacity = 1024

    [telemetry]
    """
)


@pytest.fixture
def dev_config_file(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(DEV_CONFIG)
    return path


def _normalize(config):
    config.storage.data_dir = default_data_dir()
    assert isinstance(config.server, StandaloneServerConfig)
    config.server.dir = default_dir()
    config.server.advertise_addr = None
    return config


def test_default_config(dev_config_file):
    result = load_config(dev_config_file, environ={})
    assert _normalize(result.config) == Config.default()
    assert result.warnings == []


def test_percas_prefix_no_conflict(dev_config_file):
    result = load_config(dev_config_file, environ={"PERCAS_FOO_BAR": "baz"})
    assert _normalize(result.config) == Config.default()


def test_override_otlp_endpoint(dev_config_file):
    env = {"PERCAS_CONFIG_TELEMETRY_LOGS_OPENTELEMETRY_OTLP_ENDPOINT": "http://192.168.1.14:4317"}
    config = load_config(dev_config_file, environ=env).config
    assert config.telemetry.logs.opentelemetry.otlp_endpoint == "http://192.168.1.14:4317"


def test_integer_override(dev_config_file):
    env = {"PERCAS_CONFIG_STORAGE_DISK_CAPACITY": "1024"}
    assert load_config(dev_config_file, environ=env).config.storage.disk_capacity == 1024


def test_duration_override(dev_config_file):
    env = {"PERCAS_CONFIG_TELEMETRY_METRICS_OPENTELEMETRY_PUSH_INTERVAL": "1m"}
    config = load_config(dev_config_file, environ=env).config
    assert config.telemetry.metrics.opentelemetry.push_interval == timedelta(minutes=1)


def test_bad_integer_raises(dev_config_file):
    env = {"PERCAS_CONFIG_STORAGE_DISK_CAPACITY": "lots"}
    with pytest.raises(ConfigError, match="failed to parse integer value lots"):
        load_config(dev_config_file, environ=env)


def test_unknown_variable_raises(dev_config_file):
    with pytest.raises(ConfigError, match="unknown environment variable PERCAS_CONFIG_NOPE"):
        load_config(dev_config_file, environ={"PERCAS_CONFIG_NOPE": "1"})


def test_array_type_unsupported(dev_config_file):
    env = {"PERCAS_CONFIG_SERVER_INITIAL_ADVERTISE_PEER_ADDRS": "a,b"}
    with pytest.raises(ConfigError, match="resolved type array"):
        load_config(dev_config_file, environ=env)


def test_missing_parent_creates_table_with_warning(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(MINIMAL_CONFIG)
    env = {"PERCAS_CONFIG_TELEMETRY_TRACES_CAPTURE_LOG_FILTER": "DEBUG"}
    result = load_config(path, environ=env)
    assert result.config.telemetry.traces.capture_log_filter == "DEBUG"
    assert result.warnings == [
        "[key=PERCAS_CONFIG_TELEMETRY_TRACES_CAPTURE_LOG_FILTER] config path "
        "'telemetry.traces.capture_log_filter' has missing parent 'traces'; created"
    ]


def test_mode_switch_by_env(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(MINIMAL_CONFIG)
    env = {"PERCAS_CONFIG_SERVER_MODE": "cluster", "PERCAS_CONFIG_SERVER_CLUSTER_ID": "c1"}
    config = load_config(path, environ=env).config
    assert config.server.cluster_id == "c1"
    assert config.server.listen_peer_addr == "0.0.0.0:7655"


def test_missing_file_raises(tmp_path):
    with pytest.raises(ConfigError, match="failed to read config file"):
        load_config(tmp_path / "absent.toml", environ={})


def test_invalid_toml_raises(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("[server\nmode=")
    with pytest.raises(ConfigError, match="failed to parse config content"):
        load_config(path, environ={})


def test_invalid_document_raises(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(MINIMAL_CONFIG + "\nunknown = 1\n")
    with pytest.raises(ConfigError, match="failed to deserialize config"):
        load_config(path, environ={})