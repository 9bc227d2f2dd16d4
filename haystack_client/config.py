"""Client configuration.

Settings come from, lowest precedence first: built-in defaults, an optional
YAML file, and ``HAYSTACK_*`` environment variables (a ``.env`` file in the
working directory is loaded into the environment first).

Example ``haystack.yaml``::

    uri: http://localhost:8080/api/demo
    username: su
    password: su
    content: application/json
    lease: 2min
    poll_interval: 10s
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .content import DEFAULT_VERSION, ZINC, get_codec
from .errors import ConfigError, ProtocolError
from .http import Transport
from .protocol import DEFAULT_URI
from .session import (
    DEFAULT_LEASE,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_WATCH_NAME,
    HaystackSession,
    parse_duration,
)

ENV_VARS: dict[str, str] = {
    "HAYSTACK_URI": "uri",
    "HAYSTACK_USER": "username",
    "HAYSTACK_PASS": "password",
    "HAYSTACK_TOKEN": "token",
    "HAYSTACK_VERSION": "version",
    "HAYSTACK_FORMAT": "content",
    "HAYSTACK_ACCEPT": "accept",
    "HAYSTACK_LEASE": "lease",
    "HAYSTACK_POLL": "poll_interval",
    "HAYSTACK_TIMEOUT": "timeout",
    "HAYSTACK_WATCH": "watch_name",
}


@dataclass(frozen=True)
class HaystackConfig:
    """Connection settings for one server.

    Attributes:
        uri: Server API root.
        username: Login name, None for anonymous access.
        password: Login password.
        token: Pre-supplied bearer token; skips the login handshake.
        version: Haystack protocol version.
        content: Request content type.
        accept: Response content type (defaults to ``content``).
        lease: Watch lease duration (e.g. ``1min``).
        poll_interval: Delay between watch polls (e.g. ``5s``).
        timeout: HTTP request timeout in seconds.
        watch_name: Display name of opened watches.
    """

    uri: str = DEFAULT_URI
    username: str | None = None
    password: str | None = None
    token: str | None = None
    version: str = DEFAULT_VERSION
    content: str = ZINC
    accept: str | None = None
    lease: str = DEFAULT_LEASE
    poll_interval: str = DEFAULT_POLL_INTERVAL
    timeout: float = 30.0
    watch_name: str = DEFAULT_WATCH_NAME

    def validate(self) -> None:
        """Check durations, timeout and content types.

        Raises:
            ConfigError: If any value is invalid
        """
        parse_duration(self.lease)
        parse_duration(self.poll_interval)
        if self.timeout <= 0:
            raise ConfigError(f"Invalid timeout: {self.timeout}")
        for content_type in (self.content, self.accept):
            if content_type is None:
                continue
            try:
                get_codec(content_type)
            except ProtocolError as err:
                raise ConfigError(str(err)) from err

    def create_session(self, transport: Transport, **kwargs: Any) -> HaystackSession:
        """Build a session from these settings."""
        options: dict[str, Any] = {
            "uri": self.uri,
            "username": self.username,
            "password": self.password,
            "version": self.version,
            "content": self.content,
            "accept": self.accept,
            "lease": self.lease,
            "poll_interval": self.poll_interval,
            "watch_name": self.watch_name,
        }
        if self.token is not None:
            options["token"] = self.token
        options.update(kwargs)
        return HaystackSession(transport, **options)


def _load_yaml(path: Path) -> dict[str, Any]:
    try:
        with path.open() as f:
            data = yaml.safe_load(f) or {}
    except OSError as err:
        raise ConfigError(f"Cannot read config file {path}: {err}") from err
    except yaml.YAMLError as err:
        raise ConfigError(f"Invalid config file {path}: {err}") from err
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def _coerce(values: Mapping[str, Any]) -> dict[str, Any]:
    known = {f.name for f in fields(HaystackConfig)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")

    result: dict[str, Any] = {}
    for name, value in values.items():
        if value is None:
            result[name] = None
        elif name == "timeout":
            try:
                result[name] = float(value)
            except (TypeError, ValueError) as err:
                raise ConfigError(f"Invalid timeout: {value!r}") from err
        else:
            result[name] = str(value)
    return result


def load_config(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> HaystackConfig:
    """Load settings from an optional YAML file and the environment.

    Args:
        path: YAML file with ``HaystackConfig`` field names as keys.
        environ: Environment to read instead of ``os.environ``. When given,
            no ``.env`` file is loaded.

    Raises:
        ConfigError: If the file or any value is invalid
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    config = HaystackConfig()
    if path is not None:
        config = replace(config, **_coerce(_load_yaml(Path(path))))

    overrides = {
        field_name: environ[var] for var, field_name in ENV_VARS.items() if environ.get(var)
    }
    if overrides:
        config = replace(config, **_coerce(overrides))

    config.validate()
    return config
