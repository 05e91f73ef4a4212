#!/usr/bin/env python3
"""
Jellynet Configuration Models and Validation

This module contains the Pydantic configuration models, the configuration
loader/validator and the small in-process configuration store the network
engine subscribes to for change notifications.

**Understanding the Network Configuration:**
    Every field mirrors a setting an administrator can change in the media
    server's networking page:
    - Which address families are enabled
    - Which subnets count as LAN (``!`` entries exclude subnets)
    - Which addresses or adapter names the server may bind to
    - Which adapter-name prefixes are virtual and should be ignored
    - Whether remote (non-LAN) access is allowed, and an allow/deny filter
    - Published server URL overrides (``subnet=host[:port]``)

**Why Pydantic for Configuration?**
    Pydantic converts and validates the values on load and reports every
    problem with its field path, so a bad configuration file is rejected
    with a clear message instead of failing later inside the engine.

Classes:
    Configuration Models:
        NetworkConfig: Network engine settings
        LoggingConfig: Log level and directory
        AppConfig: Top-level application configuration

    Validation and Storage:
        ConfigurationValidator: Configuration loading and validation
        NetworkConfigurationStore: Current configuration plus change notification

Author: Mark Newton
Project: Jellynet
Version: 1.0.0
License: MIT
"""

import json
import os
import threading
from typing import Any, Callable, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .utils import get_logger


# ==================== NETWORK CONFIGURATION ====================

class NetworkConfig(BaseModel):
    """
    Configuration model for the network engine.

    **Understanding List Fields:**
        All list fields accept plain strings. Whitespace is stripped and
        blank entries are removed before the engine ever sees them, so
        ``["", " 10.0.0.0/8 "]`` becomes ``["10.0.0.0/8"]``.

    Attributes:
        enable_ipv4 (bool): Use IPv4 addresses
        enable_ipv6 (bool): Use IPv6 addresses
        local_network_subnets (List[str]): LAN subnets, ``!`` prefix excludes
        local_network_addresses (List[str]): Explicit bind addresses or adapter names
        ignore_virtual_interfaces (bool): Drop adapters matching virtual_interface_names
        virtual_interface_names (List[str]): Adapter name prefixes (``veth*`` style)
        enable_remote_access (bool): Allow peers outside the LAN
        remote_ip_filter (List[str]): Addresses/subnets for the remote filter
        is_remote_ip_filter_blacklist (bool): Filter is a deny list instead of an allow list
        published_server_uri_by_subnet (List[str]): ``key=host[:port]`` overrides
        trust_all_ipv6_interfaces (bool): Treat every IPv6 address as local

    Example:
        ```python
        config = NetworkConfig(
            local_network_subnets=["192.168.0.0/16", "!192.168.50.0/24"],
            published_server_uri_by_subnet=["external=media.example.com:443"]
        )
        ```
    """
    model_config = ConfigDict(
        extra='forbid',
        str_strip_whitespace=True
    )

    enable_ipv4: bool = Field(default=True)
    enable_ipv6: bool = Field(default=False)
    local_network_subnets: List[str] = Field(default_factory=list)
    local_network_addresses: List[str] = Field(default_factory=list)
    ignore_virtual_interfaces: bool = Field(default=True)
    virtual_interface_names: List[str] = Field(default_factory=lambda: ["veth"])
    enable_remote_access: bool = Field(default=True)
    remote_ip_filter: List[str] = Field(default_factory=list)
    is_remote_ip_filter_blacklist: bool = Field(default=False)
    published_server_uri_by_subnet: List[str] = Field(default_factory=list)
    trust_all_ipv6_interfaces: bool = Field(default=False)

    # noinspection PyDecorator
    @field_validator(
        'local_network_subnets', 'local_network_addresses', 'virtual_interface_names',
        'remote_ip_filter', 'published_server_uri_by_subnet',
        mode='before'
    )
    @classmethod
    def normalize_string_list(cls, v: Any) -> List[str]:
        """
        Accept a list or a comma separated string and drop blank entries.

        Args:
            v: Raw value from file or environment

        Returns:
            List[str]: Stripped, non-empty entries

        Raises:
            ValueError: If the value is neither a string nor a list
        """
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(',')
        if not isinstance(v, (list, tuple)):
            raise ValueError("Expected a list of strings or a comma separated string")
        return [str(item).strip() for item in v if item is not None and str(item).strip()]

    @model_validator(mode='after')
    def validate_address_families(self) -> 'NetworkConfig':
        """At least one address family must be enabled."""
        if not self.enable_ipv4 and not self.enable_ipv6:
            raise ValueError("At least one of enable_ipv4 / enable_ipv6 must be true")
        return self


# ==================== LOGGING CONFIGURATION ====================

class LoggingConfig(BaseModel):
    """
    Logging configuration.

    Attributes:
        log_level (str): Python logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir (str): Directory for log files
    """
    model_config = ConfigDict(extra='forbid')

    log_level: str = Field(default="INFO")
    log_dir: str = Field(default="/app/logs")

    # noinspection PyDecorator
    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate logging level against Python's standard levels and uppercase it."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v


class AppConfig(BaseModel):
    """
    Top-level application configuration.

    Attributes:
        network (NetworkConfig): Network engine settings
        logging (LoggingConfig): Logging settings
    """
    model_config = ConfigDict(extra='ignore')

    network: NetworkConfig = Field(default_factory=NetworkConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ==================== CONFIGURATION VALIDATION ====================

class ConfigurationValidator:
    """
    Configuration loader and validator with environment variable support.

    **The Validation Process:**
        1. Load base configuration from a JSON or YAML file
        2. Apply environment variable overrides
        3. Create Pydantic models (automatic validation)
        4. Perform additional checks that only produce warnings
        5. Report errors and warnings

    **Error Handling Strategy:**
        Problems are collected and reported together, then startup is
        aborted with ``SystemExit(1)`` if any of them is an error.

    Example:
        ```python
        validator = ConfigurationValidator()
        config = validator.load_and_validate_config("/app/config/network.yaml")
        ```
    """

    # Environment variable -> (section, field)
    ENV_MAPPINGS = {
        'JELLYNET_ENABLE_IPV4': ('network', 'enable_ipv4'),
        'JELLYNET_ENABLE_IPV6': ('network', 'enable_ipv6'),
        'JELLYNET_LAN_SUBNETS': ('network', 'local_network_subnets'),
        'JELLYNET_BIND_ADDRESSES': ('network', 'local_network_addresses'),
        'JELLYNET_PUBLISHED_SERVER_URLS': ('network', 'published_server_uri_by_subnet'),
        'JELLYNET_REMOTE_IP_FILTER': ('network', 'remote_ip_filter'),
        'JELLYNET_ENABLE_REMOTE_ACCESS': ('network', 'enable_remote_access'),
        'LOG_LEVEL': ('logging', 'log_level'),
        'LOG_DIR': ('logging', 'log_dir'),
    }

    BOOLEAN_ENV_VARS = ('JELLYNET_ENABLE_IPV4', 'JELLYNET_ENABLE_IPV6', 'JELLYNET_ENABLE_REMOTE_ACCESS')

    def __init__(self):
        self.logger = get_logger("jellynet.config")
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def load_and_validate_config(self, config_path: str = "/app/config/network.json") -> AppConfig:
        """
        Load configuration from file and environment, then validate.

        Args:
            config_path (str): Path to JSON or YAML configuration file

        Returns:
            AppConfig: Fully validated application configuration

        Raises:
            SystemExit: If validation fails with errors
        """
        try:
            self.logger.info(f"Loading configuration from {config_path}")

            config_data = self._load_config_file(config_path)
            self._apply_env_overrides(config_data)

            config = AppConfig(**config_data)

            self._validate_network_config(config.network)
            self._report_validation_results()

            self.logger.info("Configuration loaded and validated successfully")
            return config

        except ValidationError as e:
            self.logger.error("Configuration model validation failed:")
            for error in e.errors():
                field_path = " -> ".join(str(x) for x in error['loc'])
                self.logger.error(f"  {field_path}: {error['msg']}")
            raise SystemExit(1)
        except SystemExit:
            raise
        except Exception as e:
            self.logger.error(f"Configuration validation failed: {e}")
            raise SystemExit(1)

    def _load_config_file(self, config_path: str) -> Dict[str, Any]:
        """
        Load configuration data from a JSON or YAML file.

        A missing file is not an error: every setting has a default.
        """
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                if config_path.endswith('.yaml') or config_path.endswith('.yml'):
                    return yaml.safe_load(f) or {}
                else:
                    return json.load(f) or {}

        except FileNotFoundError:
            self.logger.warning(f"Configuration file not found: {config_path}, using defaults")
            return {}
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            self.errors.append(f"Invalid configuration file format: {e}")
            raise

    def _apply_env_overrides(self, config_data: Dict[str, Any]) -> None:
        """
        Apply environment variable overrides to configuration data.

        List values are comma separated (``JELLYNET_LAN_SUBNETS=10.0.0.0/8,!10.0.5.0/24``);
        boolean values accept true/1/yes/on.
        """
        for env_var, (section, key) in self.ENV_MAPPINGS.items():
            value = os.environ.get(env_var)
            if not value:
                continue

            if env_var in self.BOOLEAN_ENV_VARS:
                value = value.lower() in ('true', '1', 'yes', 'on')

            config_data.setdefault(section, {})[key] = value
            self.logger.debug(f"Applied environment override: {env_var}")

    def _validate_network_config(self, network_config: NetworkConfig) -> None:
        """
        Report settings that are valid but probably not what was intended.
        """
        if not network_config.enable_remote_access and network_config.remote_ip_filter:
            self.warnings.append("remote_ip_filter is set but enable_remote_access is false; the filter has no effect")

        for entry in network_config.published_server_uri_by_subnet:
            if entry.count('=') != 1:
                self.warnings.append(f"Published server URL override is not in 'key=value' form: {entry}")

    def _report_validation_results(self) -> None:
        """
        Report validation results and exit if there are errors.

        Raises:
            SystemExit: If any validation errors occurred
        """
        if self.warnings:
            self.logger.warning("Configuration warnings:")
            for warning in self.warnings:
                self.logger.warning(f"  - {warning}")

        if self.errors:
            self.logger.error("Configuration errors:")
            for error in self.errors:
                self.logger.error(f"  - {error}")
            raise SystemExit(1)


# ==================== CONFIGURATION STORE ====================

ConfigurationListener = Callable[[str, Any], None]


class NetworkConfigurationStore:
    """
    Holds the live configuration and notifies subscribers when it changes.

    The network engine reads its settings through
    ``get_network_configuration()`` and subscribes for updates. Listeners
    are called with ``(key, new_configuration)`` and must ignore keys they
    do not own.

    Example:
        ```python
        store = NetworkConfigurationStore(NetworkConfig())
        store.subscribe(lambda key, config: print(key, config.enable_ipv6))
        store.update_configuration(NetworkConfigurationStore.STORE_KEY, NetworkConfig(enable_ipv6=True))
        ```
    """

    STORE_KEY = "network"

    def __init__(self, config: Optional[NetworkConfig] = None):
        self.logger = get_logger("jellynet.config")
        self._config = config or NetworkConfig()
        self._listeners: List[ConfigurationListener] = []
        self._lock = threading.Lock()

    @classmethod
    def from_app_config(cls, app_config: AppConfig) -> 'NetworkConfigurationStore':
        return cls(app_config.network)

    def get_network_configuration(self) -> NetworkConfig:
        return self._config

    def update_configuration(self, key: str, config: Any) -> None:
        """
        Replace a configuration section and notify subscribers.

        Args:
            key (str): Configuration key, ``STORE_KEY`` for the network section
            config: New configuration object for that key
        """
        if key == self.STORE_KEY:
            if not isinstance(config, NetworkConfig):
                raise TypeError(f"Expected NetworkConfig for key '{key}', got {type(config).__name__}")
            self._config = config

        with self._lock:
            listeners = list(self._listeners)

        self.logger.debug(f"Configuration '{key}' updated, notifying {len(listeners)} listener(s)")
        for listener in listeners:
            listener(key, config)

    def subscribe(self, listener: ConfigurationListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: ConfigurationListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)
