"""Broker configuration: defaults, YAML loading and validation."""

from __future__ import annotations

import copy
import dataclasses
import json
import logging
import os
import re
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import yaml

OVERLAP = "overlap"
ONLY_ONCE = "onlyonce"

PERSISTENCE_TYPE_MEMORY = "memory"
PERSISTENCE_TYPE_REDIS = "redis"

TOPIC_ALIAS_MGR_TYPE_FIFO = "fifo"

MAXIMUM_PACKET_SIZE = 268_435_456


class ConfigError(ValueError):
    """Raised when a configuration is malformed or invalid."""


_PLAIN_SCALARS = (str, int, float, bool, bytes, timedelta, type(None))


def _check_plain_value(value: Any, path: str) -> None:
    if isinstance(value, _PLAIN_SCALARS):
        return
    if isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            _check_plain_value(item, f"{path}[{index}]")
        return
    if isinstance(value, Mapping):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ConfigError(f"invalid key in {path}: {key!r}")
            _check_plain_value(item, f"{path}.{key}")
        return
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        for f in dataclasses.fields(value):
            _check_plain_value(getattr(value, f.name), f"{path}.{f.name}")
        return
    raise ConfigError(f"invalid value for {path}: {value!r}")


class PluginConfiguration:
    """Base for plugin configurations that live under the ``plugins`` section."""

    def validate(self) -> None:
        """Raise ConfigError if a public setting holds a value YAML cannot express."""
        for name, value in vars(self).items():
            if not name.startswith("_"):
                _check_plain_value(value, name)

    def load(self, data: Any) -> None:
        """Update known attributes from the plugin's own mapping of settings."""
        if data is None:
            return
        if not isinstance(data, Mapping):
            raise ConfigError(f"plugin configuration must be a mapping, got {data!r}")
        for key, value in data.items():
            if isinstance(key, str) and not key.startswith("_") and hasattr(self, key):
                setattr(self, key, value)


_default_plugin_config: dict[str, PluginConfiguration] = {}


def register_default_plugin_config(name: str, config: PluginConfiguration) -> None:
    """Register the default configuration of a plugin."""
    if name in _default_plugin_config:
        raise ConfigError(f"duplicated default config for {name} plugin")
    _default_plugin_config[name] = config


def _split_host_port(hostport: str) -> tuple[str, str]:
    def fail(reason: str) -> ConfigError:
        return ConfigError(f"address {hostport}: {reason}")

    i = hostport.rfind(":")
    if i < 0:
        raise fail("missing port in address")
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise fail("missing ']' in address")
        if end + 1 == len(hostport):
            raise fail("missing port in address")
        if end + 1 != i:
            if hostport[end + 1] == ":":
                raise fail("too many colons in address")
            raise fail("missing port in address")
        host = hostport[1:end]
        j, k = 1, end + 1
    else:
        host = hostport[:i]
        if ":" in host:
            raise fail("too many colons in address")
        j = k = 0
    if "[" in hostport[j:]:
        raise fail("unexpected '[' in address")
    if "]" in hostport[k:]:
        raise fail("unexpected ']' in address")
    return host, hostport[i + 1 :]


@dataclass
class TLSOptions:
    """TLS settings of a listener or endpoint."""

    cacert: str = ""
    cert: str = ""
    key: str = ""
    verify: bool = False


@dataclass
class Endpoint:
    """A gRPC or HTTP endpoint: ``[tcp|unix://][<host>]:<port>``."""

    address: str = ""
    map: str = ""
    tls: TLSOptions | None = None


def _validate_address(address: str, field_name: str) -> None:
    if address == "":
        raise ConfigError(f"{field_name} cannot be empty")
    parts = address.split("://", 1)
    if len(parts) == 1:
        parts = ["tcp", parts[0]]
    scheme, rest = parts
    if scheme == "tcp":
        try:
            _split_host_port(rest)
        except ConfigError as exc:
            raise ConfigError(f"invalid {field_name}: {exc}") from None
    elif scheme != "unix":
        raise ConfigError(f"invalid {field_name} schema: {scheme}")


@dataclass
class API:
    """API server endpoints."""

    grpc: list[Endpoint] = field(default_factory=list)
    http: list[Endpoint] = field(default_factory=list)

    def validate(self) -> None:
        """Raise ConfigError if any endpoint address is invalid."""
        for endpoint in self.grpc:
            _validate_address(endpoint.address, "endpoint")
        for endpoint in self.http:
            _validate_address(endpoint.address, "endpoint")
            _validate_address(endpoint.map, "map")


@dataclass
class LogConfig:
    """Logging behaviour."""

    level: str = "info"
    format: str = "text"
    dump_packet: bool = False

    def validate(self) -> None:
        """Raise ConfigError on an unknown level or format."""
        if self.level not in ("debug", "info", "warn", "error"):
            raise ConfigError(f"invalid log level: {self.level}")
        if self.format not in ("json", "text"):
            raise ConfigError(f"invalid log format: {self.format}")


@dataclass
class WebsocketOptions:
    """Websocket settings of a listener."""

    path: str = ""


@dataclass
class ListenerConfig:
    """A broker listener."""

    address: str = ""
    tls: TLSOptions | None = None
    websocket: WebsocketOptions | None = None


@dataclass
class GRPCConfig:
    """gRPC settings."""

    endpoint: str = ""


@dataclass
class MQTTConfig:
    """MQTT protocol limits and features."""

    session_expiry: timedelta = timedelta(hours=2)
    session_expiry_check_interval: timedelta = timedelta(seconds=20)
    message_expiry: timedelta = timedelta(hours=2)
    max_packet_size: int = MAXIMUM_PACKET_SIZE
    receive_max: int = 100
    max_keepalive: int = 60
    topic_alias_max: int = 10
    subscription_id_available: bool = True
    shared_sub_available: bool = True
    wildcard_available: bool = True
    retain_available: bool = True
    max_queued_msg: int = 1000
    max_inflight: int = 100
    maximum_qos: int = 2
    queue_qos0_msg: bool = True
    delivery_mode: str = ONLY_ONCE
    allow_zero_len_client_id: bool = True

    def validate(self) -> None:
        """Raise ConfigError if a limit or mode is invalid."""
        if self.maximum_qos > 2:
            raise ConfigError(f"invalid maximum_qos: {self.maximum_qos}")
        if self.max_queued_msg <= 0:
            raise ConfigError(f"invalid max_queued_messages : {self.max_queued_msg}")
        if self.receive_max == 0:
            raise ConfigError("server_receive_maximum cannot be 0")
        if self.max_packet_size == 0:
            raise ConfigError("max_packet_size cannot be 0")
        if self.max_inflight == 0:
            raise ConfigError("max_inflight cannot be 0")
        if self.delivery_mode not in (OVERLAP, ONLY_ONCE):
            raise ConfigError(f"invalid delivery_mode: {self.delivery_mode}")


_EMPTY_MQTT = MQTTConfig(
    session_expiry=timedelta(0),
    session_expiry_check_interval=timedelta(0),
    message_expiry=timedelta(0),
    max_packet_size=0,
    receive_max=0,
    max_keepalive=0,
    topic_alias_max=0,
    subscription_id_available=False,
    shared_sub_available=False,
    wildcard_available=False,
    retain_available=False,
    max_queued_msg=0,
    max_inflight=0,
    maximum_qos=0,
    queue_qos0_msg=False,
    delivery_mode="",
    allow_zero_len_client_id=False,
)


@dataclass
class RedisPersistence:
    """Connection settings of the redis backend."""

    addr: str = "127.0.0.1:6379"
    password: str = ""
    database: int = 0
    max_idle: int = 1000
    max_active: int = 0
    idle_timeout: timedelta = timedelta(seconds=240)


@dataclass
class PersistenceConfig:
    """Which backend stores broker state, and how to reach it."""

    type: str = PERSISTENCE_TYPE_MEMORY
    redis: RedisPersistence = field(default_factory=RedisPersistence)

    def validate(self) -> None:
        """Raise ConfigError on an unknown type or a bad redis address."""
        if self.type not in (PERSISTENCE_TYPE_MEMORY, PERSISTENCE_TYPE_REDIS):
            raise ConfigError("invalid persistence type")
        _split_host_port(self.redis.addr)
        if self.redis.database < 0:
            raise ConfigError("invalid redis database number")


@dataclass
class TopicAliasManagerConfig:
    """Topic alias manager settings."""

    type: str = TOPIC_ALIAS_MGR_TYPE_FIFO


def _default_listeners() -> list[ListenerConfig]:
    return [
        ListenerConfig(address="0.0.0.0:1883"),
        ListenerConfig(address="0.0.0.0:8883", websocket=WebsocketOptions(path="/")),
    ]


_ZAP_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "dpanic": logging.CRITICAL,
    "panic": logging.CRITICAL,
    "fatal": logging.CRITICAL,
}


class _JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "level": record.levelname.lower(),
            "ts": record.created,
            "caller": f"{record.filename}:{record.lineno}",
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["stacktrace"] = self.formatException(record.exc_info)
        return json.dumps(entry)


@dataclass
class Config:
    """The complete broker configuration."""

    listeners: list[ListenerConfig] = field(default_factory=_default_listeners)
    api: API = field(default_factory=API)
    mqtt: MQTTConfig = field(default_factory=MQTTConfig)
    grpc: GRPCConfig = field(default_factory=GRPCConfig)
    log: LogConfig = field(default_factory=LogConfig)
    pid_file: str = ""
    config_dir: str = ""
    plugins: dict[str, PluginConfiguration] = field(default_factory=dict)
    plugin_order: list[str] = field(default_factory=list)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    topic_alias_manager: TopicAliasManagerConfig = field(
        default_factory=TopicAliasManagerConfig
    )

    def validate(self) -> None:
        """Raise ConfigError if any section is invalid."""
        self.log.validate()
        self.api.validate()
        self.mqtt.validate()
        self.persistence.validate()
        for plugin in self.plugins.values():
            plugin.validate()

    def get_logger(self, log_config: LogConfig) -> logging.Logger:
        """Return a logger writing to stdout with the given level and format."""
        try:
            level = _ZAP_LEVELS[log_config.level.lower()]
        except KeyError:
            raise ConfigError(f'unrecognized level: "{log_config.level}"') from None
        logger = logging.getLogger("mqttstore")
        logger.propagate = False
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
        logger.setLevel(level)
        if log_config.format == "json":
            handler: logging.Handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(_JSONFormatter())
        elif log_config.format == "text":
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s\t%(levelname)s\t%(filename)s:%(lineno)d\t%(message)s"
                )
            )
        else:
            handler = logging.NullHandler()
        logger.addHandler(handler)
        return logger


def default_config() -> Config:
    """Return a fresh default configuration including registered plugin defaults."""
    return Config(
        plugins={
            name: copy.deepcopy(cfg) for name, cfg in _default_plugin_config.items()
        }
    )


_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def _duration(value: Any, key: str) -> timedelta:
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration for {key}: {value!r}")
    if isinstance(value, int):
        return timedelta(microseconds=value / 1000)
    if not isinstance(value, str):
        raise ConfigError(f"invalid duration for {key}: {value!r}")
    text = value.strip()
    sign = 1.0
    if text[:1] in "+-" and text:
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return timedelta(0)
    seconds = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if match is None:
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if not text or pos != len(text):
        raise ConfigError(f"invalid duration for {key}: {value!r}")
    return timedelta(seconds=sign * seconds)


def _uint(bits: int) -> Callable[[Any, str], int]:
    limit = (1 << bits) - 1

    def convert(value: Any, key: str) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"invalid integer for {key}: {value!r}")
        if not 0 <= value <= limit:
            raise ConfigError(f"{key} out of range: {value}")
        return value

    return convert


def _int(value: Any, key: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"invalid integer for {key}: {value!r}")
    return value


def _bool(value: Any, key: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"invalid boolean for {key}: {value!r}")
    return value


def _str(value: Any, key: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ConfigError(f"invalid string for {key}: {value!r}")
    return value


def _mapping(value: Any, key: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{key} must be a mapping")
    return value


def _sequence(value: Any, key: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list")
    return value


Table = dict[str, tuple[str, Callable[[Any, str], Any]]]


def _apply(obj: Any, data: Mapping[str, Any], table: Table) -> Any:
    changes = {
        attr: convert(data[key], key)
        for key, (attr, convert) in table.items()
        if key in data
    }
    return dataclasses.replace(obj, **changes)


def _tls(value: Any, key: str) -> TLSOptions | None:
    if value is None:
        return None
    table: Table = {
        "cacert": ("cacert", _str),
        "cert": ("cert", _str),
        "key": ("key", _str),
        "verify": ("verify", _bool),
    }
    return _apply(TLSOptions(), _mapping(value, key), table)


def _websocket(value: Any, key: str) -> WebsocketOptions | None:
    if value is None:
        return None
    return _apply(WebsocketOptions(), _mapping(value, key), {"path": ("path", _str)})


def _listener(value: Any, key: str) -> ListenerConfig:
    table: Table = {
        "address": ("address", _str),
        "tls": ("tls", _tls),
        "websocket": ("websocket", _websocket),
    }
    return _apply(ListenerConfig(), _mapping(value, key), table)


def _endpoint(value: Any, key: str) -> Endpoint:
    table: Table = {
        "address": ("address", _str),
        "map": ("map", _str),
        "tls": ("tls", _tls),
    }
    return _apply(Endpoint(), _mapping(value, key), table)


def _list_of(convert: Callable[[Any, str], Any]) -> Callable[[Any, str], list[Any]]:
    def parse(value: Any, key: str) -> list[Any]:
        return [convert(item, key) for item in _sequence(value, key)]

    return parse


_MQTT_TABLE: Table = {
    "session_expiry": ("session_expiry", _duration),
    "session_expiry_check_Interval": ("session_expiry_check_interval", _duration),
    "message_expiry": ("message_expiry", _duration),
    "max_packet_size": ("max_packet_size", _uint(32)),
    "server_receive_maximum": ("receive_max", _uint(16)),
    "max_keepalive": ("max_keepalive", _uint(16)),
    "topic_alias_maximum": ("topic_alias_max", _uint(16)),
    "subscription_identifier_available": ("subscription_id_available", _bool),
    "shared_subscription_available": ("shared_sub_available", _bool),
    "wildcard_subscription_available": ("wildcard_available", _bool),
    "retain_available": ("retain_available", _bool),
    "max_queued_messages": ("max_queued_msg", _int),
    "max_inflight": ("max_inflight", _uint(16)),
    "maximum_qos": ("maximum_qos", _uint(8)),
    "queue_qos0_messages": ("queue_qos0_msg", _bool),
    "delivery_mode": ("delivery_mode", _str),
    "allow_zero_length_clientid": ("allow_zero_len_client_id", _bool),
}


def _optional_uint(value: Any, key: str) -> int | None:
    return None if value is None else _uint(64)(value, key)


def config_from_dict(data: Mapping[str, Any]) -> Config:
    """Build a configuration by overlaying a parsed YAML mapping on the defaults."""
    data = _mapping(data, "config")
    config = default_config()

    if "listeners" in data:
        config.listeners = _list_of(_listener)(data["listeners"], "listeners")
    if "api" in data:
        api = _mapping(data["api"], "api")
        config.api = _apply(
            config.api,
            api,
            {"grpc": ("grpc", _list_of(_endpoint)), "http": ("http", _list_of(_endpoint))},
        )
    if "mqtt" in data:
        if data["mqtt"] is None:
            config.mqtt = MQTTConfig()
        else:
            config.mqtt = _apply(config.mqtt, _mapping(data["mqtt"], "mqtt"), _MQTT_TABLE)
    if config.mqtt == _EMPTY_MQTT:
        config.mqtt = MQTTConfig()
    if "gRPC" in data:
        config.grpc = _apply(
            config.grpc, _mapping(data["gRPC"], "gRPC"), {"endpoint": ("endpoint", _str)}
        )
    if "log" in data:
        config.log = _apply(
            config.log,
            _mapping(data["log"], "log"),
            {
                "level": ("level", _str),
                "format": ("format", _str),
                "dump_packet": ("dump_packet", _bool),
            },
        )
    if "pid_file" in data:
        config.pid_file = _str(data["pid_file"], "pid_file")
    if "config_dir" in data:
        config.config_dir = _str(data["config_dir"], "config_dir")
    if "plugin_order" in data:
        config.plugin_order = _list_of(_str)(data["plugin_order"], "plugin_order")
    if "persistence" in data:
        section = _mapping(data["persistence"], "persistence")
        persistence = _apply(config.persistence, section, {"type": ("type", _str)})
        if "redis" in section:
            redis_data = _mapping(section["redis"], "redis")
            redis = _apply(
                persistence.redis,
                redis_data,
                {
                    "addr": ("addr", _str),
                    "password": ("password", _str),
                    "database": ("database", _uint(64)),
                    "idle_timeout": ("idle_timeout", _duration),
                },
            )
            for key in ("max_idle", "max_active"):
                if key in redis_data:
                    value = _optional_uint(redis_data[key], key)
                    if value is not None:
                        setattr(redis, key, value)
            persistence.redis = redis
        config.persistence = persistence
    if "topic_alias_manager" in data:
        config.topic_alias_manager = _apply(
            config.topic_alias_manager,
            _mapping(data["topic_alias_manager"], "topic_alias_manager"),
            {"type": ("type", _str)},
        )
    if "plugins" in data:
        plugins = _mapping(data["plugins"], "plugins")
        for name, plugin in config.plugins.items():
            plugin.load(plugins.get(name))
    return config


def parse_config(file_path: str) -> Config:
    """Load and validate a YAML configuration file; an empty path gives the defaults."""
    if file_path == "":
        return default_config()
    with open(file_path, encoding="utf-8") as fh:
        try:
            data = yaml.safe_load(fh)
        except yaml.YAMLError as exc:
            raise ConfigError(str(exc)) from exc
    config = config_from_dict(data if data is not None else {})
    config.config_dir = os.path.dirname(file_path) or "."
    config.validate()
    return config