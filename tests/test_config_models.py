import json

import pytest
import yaml
from pydantic import ValidationError

from jellynet.config_models import (
    AppConfig, ConfigurationValidator, LoggingConfig, NetworkConfig, NetworkConfigurationStore
)


def test_network_config_defaults():
    """Tests the default network settings."""
    config = NetworkConfig()
    assert config.enable_ipv4 is True
    assert config.enable_ipv6 is False
    assert config.virtual_interface_names == ["veth"]
    assert config.local_network_subnets == []
    assert config.enable_remote_access is True


def test_list_fields_accept_comma_strings_and_drop_blanks():
    """Tests list normalisation from strings and lists."""
    config = NetworkConfig(
        local_network_subnets="10.0.0.0/8, !10.0.5.0/24,,",
        remote_ip_filter=["", " 203.0.113.0/24 ", None]
    )
    assert config.local_network_subnets == ["10.0.0.0/8", "!10.0.5.0/24"]
    assert config.remote_ip_filter == ["203.0.113.0/24"]


def test_at_least_one_family_required():
    """Tests that disabling both address families is rejected."""
    with pytest.raises(ValidationError):
        NetworkConfig(enable_ipv4=False, enable_ipv6=False)


def test_unknown_network_field_rejected():
    """Tests that typos in the network section are reported."""
    with pytest.raises(ValidationError):
        NetworkConfig(enable_ipv7=True)


def test_log_level_is_validated():
    """Tests that log levels are uppercased and validated."""
    assert LoggingConfig(log_level="debug").log_level == "DEBUG"
    with pytest.raises(ValidationError):
        LoggingConfig(log_level="LOUD")


def test_load_yaml_config(tmp_path, monkeypatch):
    """Tests loading a YAML configuration file."""
    monkeypatch.delenv("JELLYNET_LAN_SUBNETS", raising=False)
    path = tmp_path / "network.yaml"
    path.write_text(yaml.safe_dump({
        "network": {"local_network_subnets": ["192.168.0.0/16"], "enable_ipv6": True},
        "logging": {"log_level": "warning"}
    }))

    config = ConfigurationValidator().load_and_validate_config(str(path))

    assert config.network.local_network_subnets == ["192.168.0.0/16"]
    assert config.network.enable_ipv6 is True
    assert config.logging.log_level == "WARNING"


def test_environment_overrides(tmp_path, monkeypatch):
    """Tests that environment variables override the file."""
    path = tmp_path / "network.json"
    path.write_text(json.dumps({"network": {"enable_ipv6": False}}))
    monkeypatch.setenv("JELLYNET_ENABLE_IPV6", "yes")
    monkeypatch.setenv("JELLYNET_LAN_SUBNETS", "10.0.0.0/8,!10.0.5.0/24")

    config = ConfigurationValidator().load_and_validate_config(str(path))

    assert config.network.enable_ipv6 is True
    assert config.network.local_network_subnets == ["10.0.0.0/8", "!10.0.5.0/24"]


def test_missing_file_uses_defaults(tmp_path, monkeypatch):
    """Tests that a missing configuration file is not an error."""
    for name in ConfigurationValidator.ENV_MAPPINGS:
        monkeypatch.delenv(name, raising=False)

    config = ConfigurationValidator().load_and_validate_config(str(tmp_path / "missing.json"))
    assert config == AppConfig()


def test_invalid_config_exits(tmp_path):
    """Tests that validation errors abort startup."""
    path = tmp_path / "network.json"
    path.write_text(json.dumps({"network": {"enable_ipv4": False, "enable_ipv6": False}}))

    with pytest.raises(SystemExit):
        ConfigurationValidator().load_and_validate_config(str(path))


def test_malformed_override_is_a_warning(tmp_path, monkeypatch):
    """Tests that override entries without a single '=' only produce a warning."""
    monkeypatch.delenv("JELLYNET_PUBLISHED_SERVER_URLS", raising=False)
    path = tmp_path / "network.json"
    path.write_text(json.dumps({"network": {"published_server_uri_by_subnet": ["external"]}}))

    validator = ConfigurationValidator()
    validator.load_and_validate_config(str(path))

    assert any("external" in w for w in validator.warnings)


def test_store_notifies_listeners():
    """Tests that the store replaces the configuration and notifies subscribers."""
    store = NetworkConfigurationStore()
    received = []
    store.subscribe(lambda key, config: received.append((key, config)))

    new_config = NetworkConfig(enable_ipv6=True)
    store.update_configuration(NetworkConfigurationStore.STORE_KEY, new_config)

    assert store.get_network_configuration() is new_config
    assert received == [("network", new_config)]


def test_store_rejects_wrong_type_and_unsubscribes():
    """Tests type checking for the network key and unsubscription."""
    store = NetworkConfigurationStore()
    received = []
    listener = lambda key, config: received.append(key)  # noqa: E731
    store.subscribe(listener)

    with pytest.raises(TypeError):
        store.update_configuration(NetworkConfigurationStore.STORE_KEY, {"enable_ipv6": True})

    store.unsubscribe(listener)
    store.update_configuration("branding", object())
    assert received == []
