"""Configuration storage: loading, overlaying, diff persistence and custom fields."""

from __future__ import annotations

import copy
import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping, Optional, Union

from .config_model import (
    DEFAULT_AP_PREFIX,
    AppConfig,
    ConfigError,
    encode_netmask,
    marshal_app_config,
    parse_app_config,
)

_LOG = logging.getLogger("zwappliance.config")

BASE_CONFIG_PATH = Path("config") / "base.json"
LIVE_CONFIG_PATH = Path("app_config.json")

_MISSING = object()


@dataclass
class FieldHandler:
    """Hooks for an application-specific top-level config field.

    ``parse(item, config, strict)`` applies the JSON member to the config,
    ``describe(config)`` returns display lines and ``marshal(base, update)``
    returns the JSON value of the differences, or None when there are none.
    """

    parse: Callable[[Any, AppConfig, bool], None]
    describe: Callable[[AppConfig], list[str]]
    marshal: Callable[[AppConfig, AppConfig], Any]


def _redact(password: str) -> str:
    return "*" * len(password)


def _or(value: str, alternative: str) -> str:
    return value if value else alternative


def describe_config(config: AppConfig) -> list[str]:
    """Return human-readable lines describing the built-in config sections."""
    lines: list[str] = []

    services = ["WebDAV"] if config.dev_mode.web_dav else []
    lines.append(f"Development mode: {','.join(services) or 'OFF'}")

    wifi = config.wifi
    lines.append("Wi-Fi:")
    lines.append(f"- Power saving: {'Enabled' if wifi.power_saving else 'Disabled'}")
    ap_shown = _redact(wifi.ap.password)
    lines.append(f"- SoftAP{'' if ap_shown else ' (Open Access)'}:")
    lines.append(
        "  Enabled: "
        + ("Network provision only" if wifi.ap.net_provision_only else "Always")
    )
    lines.append(f"  SSID Prefix: {_or(wifi.ap.ssid_prefix, DEFAULT_AP_PREFIX)}")
    if ap_shown:
        lines.append(f"  Password: {ap_shown}")
    if not wifi.station.ssid:
        lines.append("- External AP not configured")
    else:
        sta_shown = _redact(wifi.station.password)
        lines.append(f"- External AP{'' if sta_shown else ' (Open Access)'}:")
        lines.append(f"  SSID: {wifi.station.ssid}")
        if sta_shown:
            lines.append(f"  Password: {sta_shown}")

    time = config.time
    lines.append("Time:")
    lines.append(f"- Baseline: {_or(time.baseline, '(not set)')}")
    lines.append(f"- Timezone: {_or(time.timezone, '(not set)')}")
    lines.append(f"- NTP server: {_or(time.ntp_server, '(not set)')}")

    httpd = config.http_server
    lines.append("HTTP Server:")
    if not httpd:
        lines.append("- Regular serving disabled")
    else:
        lines.append(f"- Root directory: {httpd.root_dir}")
    provision = httpd.net_provision
    lines.append(f"- Net provision {'enabled' if provision else 'disabled'}")
    if provision and provision.default_page:
        lines.append(f"  Default page: {provision.default_page}")
    ota = httpd.web_ota
    lines.append(f"- WebOTA {'enabled' if ota else 'disabled'}")
    if ota:
        netmask = encode_netmask(ota.netmask) or "(not specified)"
        lines.append(f"  Netmask: {netmask}")
    return lines


def _decode(text: Union[str, bytes, bytearray], strict: bool) -> Any:
    if not isinstance(text, str):
        text = bytes(text).decode("utf-8", errors="replace")
    try:
        if strict:
            return json.loads(text)
        value, _ = json.JSONDecoder().raw_decode(text.lstrip(" \t\r\n"))
        return value
    except json.JSONDecodeError as exc:
        raise ConfigError(f"failed to parse data (around byte {exc.pos})") from exc


def _get_member(data: Any, key: str) -> Any:
    if not isinstance(data, Mapping):
        return _MISSING
    if key in data:
        return data[key]
    lowered = key.lower()
    for name, value in data.items():
        if isinstance(name, str) and name.lower() == lowered:
            return value
    return _MISSING


class ConfigStore:
    """Thread-safe holder of the live configuration and its files.

    The base config lives under ``system_root/config/base.json``; the live
    overlay, holding only the differences from the base, under
    ``storage_root/app_config.json``.
    """

    def __init__(self, system_root: Union[str, Path], storage_root: Union[str, Path]) -> None:
        self.base_path = Path(system_root) / BASE_CONFIG_PATH
        self.live_path = Path(storage_root) / LIVE_CONFIG_PATH
        self._lock = threading.RLock()
        self._config = AppConfig()
        self._handlers: dict[str, FieldHandler] = {}
        self._closed = False

    def register_field(self, key: str, handler: FieldHandler) -> None:
        """Register handlers for a custom top-level field."""
        if key in self._handlers:
            raise ConfigError(f"field {key!r} already registered")
        self._handlers[key] = handler

    def parse(self, text: Union[str, bytes, bytearray], config: AppConfig, strict: bool = False) -> AppConfig:
        """Overlay JSON text onto ``config``; on error ``config`` is unchanged."""
        data = _decode(text, strict)
        if not isinstance(data, Mapping):
            data = {}
        working = copy.deepcopy(config)
        parse_app_config(data, working, strict)
        for key, handler in self._handlers.items():
            item = _get_member(data, key)
            if item is not _MISSING:
                _LOG.debug("Parsing custom field '%s'...", key)
                handler.parse(item, working, strict)
        config.__dict__.update(working.__dict__)
        return config

    def marshal(self, base: AppConfig, update: AppConfig) -> Optional[dict[str, Any]]:
        """Return the JSON object of differences of ``update`` from ``base``."""
        result = marshal_app_config(base, update) or {}
        for key, handler in self._handlers.items():
            value = handler.marshal(base, update)
            if value is not None:
                result[key] = value
        return result or None

    def describe(self, config: AppConfig) -> list[str]:
        """Return display lines for the whole config, custom fields included."""
        lines = ["------ Configurations ------"]
        lines.extend(describe_config(config))
        for handler in self._handlers.values():
            lines.extend(handler.describe(config))
        lines.append("----------------------------")
        return lines

    def _load_file(self, path: Path, config: AppConfig) -> None:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"failed to open {path}") from exc
        _LOG.debug("Reading %d bytes...", len(text))
        self.parse(text, config, False)

    def load(self) -> AppConfig:
        """Load the base config, then overlay the live config if it exists."""
        config = AppConfig()
        _LOG.debug("Loading system base config...")
        self._load_file(self.base_path, config)
        for line in self.describe(config):
            _LOG.debug(line)
        _LOG.debug("Loading live config...")
        try:
            self._load_file(self.live_path, config)
        except ConfigError:
            _LOG.warning("Unable to load live config!")
        for line in self.describe(config):
            _LOG.info(line)
        with self._lock:
            self._config = config
        return config

    @contextmanager
    def access(self) -> Iterator[AppConfig]:
        """Hold exclusive access to the live config for the duration of the block."""
        with self._lock:
            if self._closed:
                raise ConfigError("configuration store is closed")
            yield self._config

    def persist(self) -> dict[str, Any]:
        """Write the differences from the base config to the live config file."""
        with self._lock:
            if self._closed:
                raise ConfigError("configuration store is closed")
            base = AppConfig()
            _LOG.debug("Loading system base config...")
            self._load_file(self.base_path, base)
            diff = self.marshal(base, self._config)
            if diff is None:
                _LOG.debug("New config matches baseline!")
                diff = {}
            try:
                text = json.dumps(diff, indent="\t", ensure_ascii=False)
            except (TypeError, ValueError) as exc:
                raise ConfigError("failed to print JSON data diff") from exc
            try:
                self.live_path.write_text(text, encoding="utf-8")
            except OSError as exc:
                raise ConfigError("failed to write config file") from exc
            _LOG.info("Saved config (%d bytes) to %s", len(text), self.live_path)
            return diff

    def close(self) -> None:
        """Take the access lock for good, so no update is left half done."""
        self._lock.acquire()
        self._closed = True