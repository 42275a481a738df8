"""
Tests for deployer configuration.

Run with: pytest tests/test_config.py -v
"""
import logging

import pydantic
import pytest

from local_deployer.core.config import LocalDeployerProperties, PortRange, Settings
from local_deployer.core.exceptions import ConfigurationError


class TestPortRange:
    """Tests for port range validation."""

    def test_defaults(self):
        port_range = PortRange()

        assert (port_range.low, port_range.high) == (20000, 61000)
        assert 20000 in port_range
        assert 61001 not in port_range

    @pytest.mark.parametrize("low,high", [(0, 100), (200, 100), (100, 100), (1000, 70000)])
    def test_invalid_bounds_rejected(self, low, high):
        with pytest.raises(pydantic.ValidationError):
            PortRange(low=low, high=high)


class TestLocalDeployerProperties:
    """Tests for LocalDeployerProperties."""

    def test_maximum_concurrent_tasks_must_be_positive(self):
        with pytest.raises(pydantic.ValidationError):
            LocalDeployerProperties(maximum_concurrent_tasks=0)

    def test_debug_port_is_deprecated(self, caplog):
        with caplog.at_level(logging.WARNING, logger="local_deployer.core.config"):
            LocalDeployerProperties(debug_port=5005)

        assert "deprecated" in caplog.text


class TestSnapshot:
    """Tests for per-deployment snapshots."""

    def test_snapshot_does_not_repeat_debug_port_warning(self, caplog):
        properties = LocalDeployerProperties(debug_port=5005)
        caplog.clear()

        with caplog.at_level(logging.WARNING, logger="local_deployer.core.config"):
            snapshot = properties.snapshot()
            properties.snapshot()

        assert snapshot.debug_port == 5005
        assert "deprecated" not in caplog.text

    def test_debug_port_override_warns(self, caplog):
        with caplog.at_level(logging.WARNING, logger="local_deployer.core.config"):
            snapshot = LocalDeployerProperties().snapshot({"deployer.local.debug-port": "5005"})

        assert snapshot.debug_port == 5005
        assert "deprecated" in caplog.text

    def test_snapshot_is_isolated_from_later_changes(self):
        properties = LocalDeployerProperties(shutdown_timeout=10)
        snapshot = properties.snapshot()

        properties.shutdown_timeout = 99
        properties.docker.network = "host"

        assert snapshot.shutdown_timeout == 10
        assert snapshot.docker.network == "bridge"

    def test_snapshot_is_frozen(self):
        snapshot = LocalDeployerProperties().snapshot()

        with pytest.raises(pydantic.ValidationError):
            snapshot.shutdown_timeout = 1

    def test_deployment_property_overrides(self):
        properties = LocalDeployerProperties()

        snapshot = properties.snapshot({
            "deployer.local.inherit-logging": "true",
            "deployer.local.java_opts": "-Xmx1g",
            "deployer.local.shutdown-timeout": "5",
            "unrelated.key": "ignored",
        })

        assert snapshot.inherit_logging is True
        assert snapshot.java_opts == "-Xmx1g"
        assert snapshot.shutdown_timeout == 5
        assert properties.inherit_logging is False

    def test_unsupported_override_ignored(self):
        snapshot = LocalDeployerProperties().snapshot({"deployer.local.port-range": "1-2"})

        assert snapshot.port_range == PortRange()

    def test_invalid_override_raises_configuration_error(self):
        with pytest.raises(ConfigurationError) as exc_info:
            LocalDeployerProperties().snapshot({"deployer.local.shutdown-timeout": "soon"})

        assert exc_info.value.details["field"] == "deployment_properties"


class TestSettings:
    """Tests for environment-bound settings."""

    def test_nested_deployer_settings_from_env(self, monkeypatch):
        monkeypatch.setenv("DEPLOYER__maximum_concurrent_tasks", "3")
        monkeypatch.setenv("DEPLOYER__port_range__low", "30000")

        settings = Settings()

        assert settings.DEPLOYER.maximum_concurrent_tasks == 3
        assert settings.DEPLOYER.port_range.low == 30000
        assert settings.DEPLOYER.port_range.high == 61000


class TestLoggingSetup:
    """Tests for setup_logging."""

    def test_configures_package_logger_once(self):
        from local_deployer.core.logging_config import PACKAGE_LOGGER, setup_logging

        package_logger = logging.getLogger(PACKAGE_LOGGER)
        saved_handlers, saved_level = list(package_logger.handlers), package_logger.level
        package_logger.handlers = []
        try:
            setup_logging("warning")
            setup_logging("debug")

            assert package_logger.level == logging.DEBUG
            assert len(package_logger.handlers) == 1
        finally:
            package_logger.handlers = saved_handlers
            package_logger.setLevel(saved_level)
