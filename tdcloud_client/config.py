# tdcloud_client/config.py
from __future__ import annotations
import configparser
import logging
import os
from pathlib import Path
from typing import Any, Mapping, Optional

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import InvalidConfigurationError

log = logging.getLogger("tdcloud")

DEFAULT_ENDPOINT = "api.treasuredata.com"
DEFAULT_RETRY_LIMIT = 7
DEFAULT_RETRY_INITIAL_INTERVAL_MS = 500
DEFAULT_RETRY_MAX_INTERVAL_MS = 60_000
DEFAULT_RETRY_MULTIPLIER = 2.0
DEFAULT_CONNECT_TIMEOUT_MS = 15_000
DEFAULT_IDLE_TIMEOUT_MS = 60_000
DEFAULT_CONNECTION_POOL_SIZE = 64

ENV_API_KEY = "TD_API_KEY"
ENV_CONFIG_FILE = "TD_CONFIG_FILE"
CONF_SECTION = "account"


def default_conf_path() -> Path:
    override = os.getenv(ENV_CONFIG_FILE)
    if override:
        return Path(override)
    return Path.home() / ".td" / "td.conf"


class ProxyConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: str = "localhost"
    port: int = 8080
    use_ssl: bool = False
    user: Optional[str] = None
    password: Optional[str] = None

    @property
    def url(self) -> str:
        scheme = "https" if self.use_ssl else "http"
        return f"{scheme}://{self.host}:{self.port}"

    def to_httpx(self) -> httpx.Proxy:
        if self.user is not None:
            return httpx.Proxy(self.url, auth=(self.user, self.password or ""))
        return httpx.Proxy(self.url)

    def __repr__(self) -> str:
        # keep credentials out of logs
        return f"ProxyConfig(url={self.url!r}, user={self.user!r})"


class ClientConfig(BaseModel):
    """Immutable client configuration. Build it with ClientConfigBuilder."""

    model_config = ConfigDict(frozen=True)

    endpoint: str = DEFAULT_ENDPOINT
    port: Optional[int] = None
    use_ssl: bool = True
    api_key: Optional[str] = Field(default=None, repr=False)
    user: Optional[str] = None
    password: Optional[str] = Field(default=None, repr=False)
    proxy: Optional[ProxyConfig] = None

    retry_limit: int = DEFAULT_RETRY_LIMIT
    retry_initial_interval_ms: int = DEFAULT_RETRY_INITIAL_INTERVAL_MS
    retry_max_interval_ms: int = DEFAULT_RETRY_MAX_INTERVAL_MS
    retry_multiplier: float = DEFAULT_RETRY_MULTIPLIER
    connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS
    idle_timeout_ms: int = DEFAULT_IDLE_TIMEOUT_MS
    connection_pool_size: int = DEFAULT_CONNECTION_POOL_SIZE

    @field_validator(
        "port",
        "retry_initial_interval_ms",
        "retry_max_interval_ms",
        "connect_timeout_ms",
        "idle_timeout_ms",
        "connection_pool_size",
    )
    @classmethod
    def _positive(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("retry_limit")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("retry_limit must be >= 0")
        return v

    @field_validator("retry_multiplier")
    @classmethod
    def _growing(cls, v: float) -> float:
        if v <= 1.0:
            raise ValueError("retry_multiplier must be > 1.0")
        return v

    @model_validator(mode="after")
    def _interval_bounds(self) -> "ClientConfig":
        if self.retry_max_interval_ms < self.retry_initial_interval_ms:
            raise ValueError("retry_max_interval_ms must be >= retry_initial_interval_ms")
        return self

    @property
    def base_url(self) -> str:
        scheme = "https" if self.use_ssl else "http"
        endpoint = self.endpoint
        if "://" in endpoint:
            scheme, _, endpoint = endpoint.partition("://")
        endpoint = endpoint.rstrip("/")
        return f"{scheme}://{endpoint}:{self.port}" if self.port else f"{scheme}://{endpoint}"

    def with_api_key(self, api_key: str) -> "ClientConfig":
        return self.model_copy(update={"api_key": api_key, "user": None, "password": None})


# -------- configuration sources --------

_INT_FIELDS = {
    "port",
    "proxy_port",
    "retry_limit",
    "retry_initial_interval_ms",
    "retry_max_interval_ms",
    "connect_timeout_ms",
    "idle_timeout_ms",
    "connection_pool_size",
}
_FLOAT_FIELDS = {"retry_multiplier"}
_BOOL_FIELDS = {"use_ssl", "proxy_use_ssl"}
_PROXY_FIELDS = {
    "proxy_host": "host",
    "proxy_port": "port",
    "proxy_use_ssl": "use_ssl",
    "proxy_user": "user",
    "proxy_password": "password",
}

# td.conf / properties key -> flat field name
PROPERTY_KEYS = {
    "endpoint": "endpoint",
    "port": "port",
    "usessl": "use_ssl",
    "apikey": "api_key",
    "api_key": "api_key",
    "user": "user",
    "password": "password",
    "proxy.host": "proxy_host",
    "proxy.port": "proxy_port",
    "proxy.usessl": "proxy_use_ssl",
    "proxy.user": "proxy_user",
    "proxy.password": "proxy_password",
    "retry.limit": "retry_limit",
    "retry.initial_interval_millis": "retry_initial_interval_ms",
    "retry.max_interval_millis": "retry_max_interval_ms",
    "retry.multiplier": "retry_multiplier",
    "connect_timeout_millis": "connect_timeout_ms",
    "idle_timeout_millis": "idle_timeout_ms",
    "connection_pool_size": "connection_pool_size",
}


def properties_to_fields(props: Mapping[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for raw_key, value in props.items():
        key = raw_key.strip().lower()
        if key.startswith("td.client."):
            key = key[len("td.client."):]
        name = PROPERTY_KEYS.get(key)
        if name is None or value is None:
            continue
        out[name] = value
    return out


class _EnvironmentSource(BaseSettings):
    """Process environment, read through pydantic-settings."""

    model_config = SettingsConfigDict(env_prefix="TD_CLIENT_", extra="ignore")

    api_key: Optional[str] = Field(default=None, validation_alias=AliasChoices(ENV_API_KEY, "TD_CLIENT_APIKEY"))
    endpoint: Optional[str] = None
    port: Optional[str] = None
    use_ssl: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    proxy_host: Optional[str] = None
    proxy_port: Optional[str] = None
    proxy_use_ssl: Optional[str] = None
    proxy_user: Optional[str] = None
    proxy_password: Optional[str] = None
    retry_limit: Optional[str] = None
    retry_initial_interval_ms: Optional[str] = None
    retry_max_interval_ms: Optional[str] = None
    retry_multiplier: Optional[str] = None
    connect_timeout_ms: Optional[str] = None
    idle_timeout_ms: Optional[str] = None
    connection_pool_size: Optional[str] = None


def environment_source() -> dict[str, Any]:
    return _EnvironmentSource().model_dump(exclude_none=True)


def conf_file_source(path: Path | str | None = None) -> dict[str, Any]:
    """Key/value pairs of the [account] section of the local td.conf file."""
    conf_path = Path(path) if path is not None else default_conf_path()
    if not conf_path.is_file():
        return {}
    parser = configparser.ConfigParser(interpolation=None)
    try:
        parser.read(conf_path, encoding="utf-8")
    except configparser.Error as e:
        raise InvalidConfigurationError(f"cannot parse {conf_path}: {e}", operation="load_config") from e
    if not parser.has_section(CONF_SECTION):
        return {}
    fields = properties_to_fields(dict(parser.items(CONF_SECTION)))
    log.debug("[config] read %d keys from %s", len(fields), conf_path)
    return fields


def merge_config(base: Mapping[str, Any], fallback: Mapping[str, Any]) -> dict[str, Any]:
    """Fill keys missing from `base` with values from the lower-precedence `fallback`."""
    merged = dict(base)
    for key, value in fallback.items():
        if value is not None and merged.get(key) is None:
            merged[key] = value
    return merged


def _coerce(name: str, value: Any) -> Any:
    if not isinstance(value, str):
        return value
    text = value.strip()
    try:
        if name in _INT_FIELDS:
            return int(text)
        if name in _FLOAT_FIELDS:
            return float(text)
    except ValueError as e:
        kind = "integer" if name in _INT_FIELDS else "double"
        raise InvalidConfigurationError(f"[{name}] cannot cast {value!r} to {kind}", operation="load_config") from e
    if name in _BOOL_FIELDS:
        return text.lower() in ("1", "true", "yes", "on")
    return text


def fields_to_config(fields: Mapping[str, Any]) -> ClientConfig:
    values = {name: _coerce(name, v) for name, v in fields.items() if v is not None}

    proxy_values = {
        attr: values.pop(name) for name, attr in _PROXY_FIELDS.items() if name in values
    }
    if values.get("proxy") is None and proxy_values:
        values["proxy"] = ProxyConfig(**proxy_values)

    try:
        return ClientConfig(**values)
    except ValidationError as e:
        raise InvalidConfigurationError(str(e), operation="build_config") from e


class ClientConfigBuilder:
    """
    Collects configuration from (highest precedence first):
      1. explicit setter calls
      2. the process environment (TD_API_KEY, TD_CLIENT_*)
      3. the local td.conf file
    A lower source never overwrites a value set by a higher one.
    """

    def __init__(
        self,
        *,
        load_env: bool = True,
        load_conf_file: bool = True,
        conf_file: Path | str | None = None,
    ):
        self.load_env = load_env
        self.load_conf_file = load_conf_file
        self.conf_file = conf_file
        self._explicit: dict[str, Any] = {}

    def _set(self, name: str, value: Any) -> "ClientConfigBuilder":
        self._explicit[name] = value
        return self

    def set_endpoint(self, endpoint: str) -> "ClientConfigBuilder":
        return self._set("endpoint", endpoint)

    def set_port(self, port: int) -> "ClientConfigBuilder":
        return self._set("port", port)

    def set_use_ssl(self, use_ssl: bool) -> "ClientConfigBuilder":
        return self._set("use_ssl", use_ssl)

    def set_api_key(self, api_key: str) -> "ClientConfigBuilder":
        return self._set("api_key", api_key)

    def set_user(self, user: str) -> "ClientConfigBuilder":
        return self._set("user", user)

    def set_password(self, password: str) -> "ClientConfigBuilder":
        return self._set("password", password)

    def set_proxy(self, proxy: ProxyConfig) -> "ClientConfigBuilder":
        return self._set("proxy", proxy)

    def set_retry_limit(self, retry_limit: int) -> "ClientConfigBuilder":
        return self._set("retry_limit", retry_limit)

    def set_retry_initial_interval_ms(self, ms: int) -> "ClientConfigBuilder":
        return self._set("retry_initial_interval_ms", ms)

    def set_retry_max_interval_ms(self, ms: int) -> "ClientConfigBuilder":
        return self._set("retry_max_interval_ms", ms)

    def set_retry_multiplier(self, multiplier: float) -> "ClientConfigBuilder":
        return self._set("retry_multiplier", multiplier)

    def set_connect_timeout_ms(self, ms: int) -> "ClientConfigBuilder":
        return self._set("connect_timeout_ms", ms)

    def set_idle_timeout_ms(self, ms: int) -> "ClientConfigBuilder":
        return self._set("idle_timeout_ms", ms)

    def set_connection_pool_size(self, size: int) -> "ClientConfigBuilder":
        return self._set("connection_pool_size", size)

    def set_properties(self, props: Mapping[str, Any]) -> "ClientConfigBuilder":
        """Apply td.conf-style keys (``apikey``, ``retry.limit``, ...) as explicit values."""
        self._explicit.update(properties_to_fields(props))
        return self

    def sources(self) -> list[dict[str, Any]]:
        ordered = [dict(self._explicit)]
        if self.load_env:
            ordered.append(environment_source())
        if self.load_conf_file:
            ordered.append(conf_file_source(self.conf_file))
        return ordered

    def build(self) -> ClientConfig:
        merged: dict[str, Any] = {}
        for source in self.sources():
            merged = merge_config(merged, source)
        return fields_to_config(merged)
