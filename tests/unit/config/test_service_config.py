"""
Unit tests for service configuration loading.
"""
import logging

import pytest

from sandpit.config import GatewayConfig, PoolConfig, QuotaConfig, setup_logging
from sandpit.config.defaults import get_default_server_config
from sandpit.config.service import CONFIG_ENV_VAR, ServiceConfig
from sandpit.executor.sandbox import SandboxLevel

EXAMPLE_CONFIG = """
runtimes:
  - language: python
    image: python:3.12-slim
    command: [python3, -I, -u, "{source}"]
    wall_clock_limit: 5
  - language: javascript
    image: node:20-slim
    command: [node, "{source}"]
    memory_limit: 128m
    wall_clock_limit: 8
gateway:
  queue_timeout: 10
  max_output_bytes: 1024
pool:
  max_workers: 3
quota:
  bucket_capacity: 4
sandbox:
  level: docker
"""


class TestDefaults:
    def test_gateway_defaults(self):
        config = GatewayConfig()
        assert config.max_output_bytes == 64 * 1024
        assert config.queue_timeout == 30.0

    def test_pool_defaults(self):
        config = PoolConfig()
        assert config.max_workers == 8
        assert config.warm_target == 1

    def test_unknown_keys_are_rejected(self):
        with pytest.raises(ValueError, match="Unknown QuotaConfig keys"):
            QuotaConfig.from_dict({"bucket_size": 3})

    def test_default_server_config(self):
        assert get_default_server_config() == {"host": "0.0.0.0", "port": 8000, "log_level": "INFO"}


class TestServiceConfig:
    def test_builtin_defaults(self, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        config = ServiceConfig.load()
        assert config.registry.languages == ["python"]
        assert config.sandbox.level == SandboxLevel.DOCKER

    def test_load_file(self, tmp_path):
        path = tmp_path / "sandpit.yaml"
        path.write_text(EXAMPLE_CONFIG)
        config = ServiceConfig.load(str(path))
        assert config.registry.languages == ["python", "javascript"]
        assert config.gateway.queue_timeout == 10
        assert config.gateway.max_output_bytes == 1024
        assert config.pool.max_workers == 3
        assert config.pool.warm_target == 1
        assert config.quota.bucket_capacity == 4
        assert config.sandbox.level == SandboxLevel.DOCKER

    def test_load_from_environment(self, tmp_path, monkeypatch):
        path = tmp_path / "sandpit.yaml"
        path.write_text(EXAMPLE_CONFIG)
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))
        assert ServiceConfig.load().pool.max_workers == 3

    def test_sections_without_runtimes_keep_default_registry(self):
        config = ServiceConfig.from_dict({"pool": {"max_workers": 1}})
        assert config.registry.languages == ["python"]
        assert config.pool.max_workers == 1

    def test_unknown_section(self):
        with pytest.raises(ValueError, match="Unknown config sections"):
            ServiceConfig.from_dict({"runtime": []})

    def test_non_mapping_file(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ValueError, match="must contain a mapping"):
            ServiceConfig.load(str(path))

    def test_end_to_end_deadline_uses_slowest_runtime(self, tmp_path):
        path = tmp_path / "sandpit.yaml"
        path.write_text(EXAMPLE_CONFIG)
        config = ServiceConfig.load(str(path))
        assert config.end_to_end_deadline == 10 + 8 + 5.0


class TestLogging:
    def test_setup_logging_level(self):
        setup_logging("DEBUG")
        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("uvicorn.access").level == logging.WARNING
        setup_logging("INFO")

    def test_invalid_level_falls_back_to_info(self):
        setup_logging("chatty")
        assert logging.getLogger().level == logging.INFO

    def test_log_file(self, tmp_path):
        log_file = tmp_path / "sandpit.log"
        setup_logging("INFO", str(log_file))
        logging.getLogger("sandpit.test").info("hello file")
        for handler in logging.getLogger().handlers:
            handler.flush()
        assert "hello file" in log_file.read_text()
        setup_logging("INFO")
