"""Appliance configuration data model, field parsers and diff marshalling."""

from __future__ import annotations

import copy
import json
import re
import socket
from dataclasses import dataclass, field, fields
from ipaddress import IPv4Address
from typing import Any, Callable, Mapping, Optional

DEFAULT_AP_PREFIX = "ZWAppliance-"

_SIZE_MAX = 2**32 - 1
_SIZE_RE = re.compile(r"[ \t\n\v\f\r]*([+-]?)([0-9]+)", re.ASCII)


class ConfigError(ValueError):
    """Raised when configuration data is missing or malformed."""


@dataclass
class WifiAp:
    """SoftAP settings."""

    ssid_prefix: str = DEFAULT_AP_PREFIX
    password: str = ""
    net_provision_only: bool = True


@dataclass
class WifiStation:
    """External AP credential; provisioned when the SSID is set."""

    ssid: str = ""
    password: str = ""

    def __bool__(self) -> bool:
        return bool(self.ssid)

    def clear(self) -> None:
        """Forget the stored credential."""
        self.ssid = ""
        self.password = ""


@dataclass
class Wifi:
    power_saving: bool = False
    ap: WifiAp = field(default_factory=WifiAp)
    station: WifiStation = field(default_factory=WifiStation)


@dataclass
class TimeConfig:
    baseline: str = ""
    timezone: str = ""
    ntp_server: str = ""


@dataclass
class DevMode:
    web_dav: bool = False

    def __bool__(self) -> bool:
        return self.web_dav


@dataclass
class NetProvision:
    enabled: bool = False
    default_page: str = ""

    def __bool__(self) -> bool:
        return self.enabled


@dataclass
class WebOTA:
    enabled: bool = False
    netmask: Optional[IPv4Address] = None

    def __bool__(self) -> bool:
        return self.enabled


@dataclass
class HttpServerConfig:
    """HTTP service settings; regular serving is on when root_dir is set."""

    root_dir: str = ""
    net_provision: NetProvision = field(default_factory=NetProvision)
    web_ota: WebOTA = field(default_factory=WebOTA)

    def __bool__(self) -> bool:
        return bool(self.root_dir)


@dataclass
class AppConfig:
    wifi: Wifi = field(default_factory=Wifi)
    time: TimeConfig = field(default_factory=TimeConfig)
    dev_mode: DevMode = field(default_factory=DevMode)
    http_server: HttpServerConfig = field(default_factory=HttpServerConfig)


# ---------------------------------------------------------------------------
# Field parsers and decoders


def parse_string(item: Any) -> str:
    if isinstance(item, str):
        return item
    raise ConfigError(f"expected a string, got {item!r}")


def parse_bool(item: Any) -> bool:
    if isinstance(item, bool):
        return item
    raise ConfigError(f"expected a boolean, got {item!r}")


def decode_size(text: str) -> int:
    """Decode an unsigned decimal size; the empty string is an error."""
    if text == "":
        raise ConfigError("size is empty")
    match = _SIZE_RE.fullmatch(text)
    if match is None:
        raise ConfigError(f"size {text!r} is malformed")
    sign, digits = match.groups()
    value = int(digits)
    if value > _SIZE_MAX:
        return _SIZE_MAX
    if sign == "-":
        value = (-value) % (_SIZE_MAX + 1)
    return value


def _netmask_is_valid(value: int) -> bool:
    seen_zero = False
    for bit in range(31, -1, -1):
        if value & (1 << bit):
            if seen_zero:
                return False
        else:
            seen_zero = True
    return True


def decode_netmask(text: str) -> Optional[IPv4Address]:
    """Decode a netmask; the empty string means no netmask."""
    if text == "":
        return None
    try:
        packed = socket.inet_aton(text)
    except (OSError, ValueError) as exc:
        raise ConfigError(f"netmask {text!r} is malformed") from exc
    address = IPv4Address(packed)
    if not _netmask_is_valid(int(address)):
        raise ConfigError(f"netmask {text!r} is invalid")
    return address


def decode_enum(mapping: Mapping[str, Any], text: str) -> Any:
    try:
        return mapping[text]
    except KeyError:
        raise ConfigError(f"unknown value {text!r}") from None


def encode_size(value: int) -> str:
    return "" if value == 0 else str(value)


def encode_netmask(value: Optional[IPv4Address]) -> str:
    return "" if value is None else str(value)


def encode_enum(mapping: Mapping[Any, str], value: Any) -> str:
    return str(mapping.get(value, "?"))


def _parse_netmask_item(item: Any) -> Optional[IPv4Address]:
    return decode_netmask(parse_string(item))


# ---------------------------------------------------------------------------
# Schema-driven parsing and marshalling


@dataclass(frozen=True)
class _Field:
    name: str
    parser: Optional[Callable[[Any], Any]] = None
    encoder: Optional[Callable[[Any], str]] = None
    nested: bool = False


_SCHEMA: dict[type, tuple[_Field, ...]] = {
    WifiAp: (
        _Field("ssid_prefix", parse_string),
        _Field("password", parse_string),
        _Field("net_provision_only", parse_bool),
    ),
    WifiStation: (
        _Field("ssid", parse_string),
        _Field("password", parse_string),
    ),
    Wifi: (
        _Field("power_saving", parse_bool),
        _Field("ap", nested=True),
        _Field("station", nested=True),
    ),
    TimeConfig: (
        _Field("baseline", parse_string),
        _Field("timezone", parse_string),
        _Field("ntp_server", parse_string),
    ),
    DevMode: (_Field("web_dav", parse_bool),),
    NetProvision: (
        _Field("enabled", parse_bool),
        _Field("default_page", parse_string),
    ),
    WebOTA: (
        _Field("enabled", parse_bool),
        _Field("netmask", _parse_netmask_item, encode_netmask),
    ),
    HttpServerConfig: (
        _Field("root_dir", parse_string),
        _Field("net_provision", nested=True),
        _Field("web_ota", nested=True),
    ),
    AppConfig: (
        _Field("wifi", nested=True),
        _Field("dev_mode", nested=True),
        _Field("time", nested=True),
        _Field("http_server", nested=True),
    ),
}

_MISSING = object()


def _get_item(data: Any, key: str) -> Any:
    """Look up an object member the way the JSON reader does: case-insensitively."""
    if not isinstance(data, Mapping):
        return _MISSING
    if key in data:
        return data[key]
    lowered = key.lower()
    for name, value in data.items():
        if isinstance(name, str) and name.lower() == lowered:
            return value
    return _MISSING


def parse_field(
    data: Any,
    field: str,
    target: Any,
    parser: Callable[[Any], Any],
    strict: bool = False,
) -> None:
    """Assign a parsed JSON member to ``target.field``.

    An absent member leaves the target untouched; a malformed one raises
    ConfigError when strict and is ignored otherwise.
    """
    item = _get_item(data, field)
    if item is _MISSING:
        return
    try:
        value = parser(item)
    except ConfigError:
        if strict:
            raise
        return
    setattr(target, field, value)


def _parse_obj(data: Any, target: Any, strict: bool) -> None:
    for spec in _SCHEMA[type(target)]:
        if spec.nested:
            sub = _get_item(data, spec.name)
            _parse_obj(None if sub is _MISSING else sub, getattr(target, spec.name), strict)
        else:
            parse_field(data, spec.name, target, spec.parser, strict)


def parse_wifi_station(data: Any, station: WifiStation, strict: bool = False) -> WifiStation:
    _parse_obj(data, station, strict)
    return station


def parse_time(data: Any, time: TimeConfig, strict: bool = False) -> TimeConfig:
    _parse_obj(data, time, strict)
    return time


def _load_json(text: str, strict: bool) -> Any:
    try:
        if strict:
            return json.loads(text)
        value, _ = json.JSONDecoder().raw_decode(text.lstrip(" \t\r\n"))
        return value
    except json.JSONDecodeError as exc:
        raise ConfigError(f"failed to parse data (around byte {exc.pos})") from exc


def parse_app_config(data: Any, config: AppConfig, strict: bool = False) -> AppConfig:
    """Overlay JSON text or a decoded mapping onto ``config``.

    On error the config is left exactly as it was.
    """
    if isinstance(data, (str, bytes, bytearray)):
        if not isinstance(data, str):
            data = bytes(data).decode("utf-8")
        data = _load_json(data, strict)
    working = copy.deepcopy(config)
    _parse_obj(data, working, strict)
    for f in fields(AppConfig):
        setattr(config, f.name, getattr(working, f.name))
    return config


def marshal_field(base: Any, update: Any, encoder: Optional[Callable[[Any], str]] = None) -> Any:
    """Return the JSON value for ``update`` if it differs from ``base``, else None."""
    if encoder is not None:
        base, update = encoder(base), encoder(update)
    if base == update:
        return None
    return update


def _marshal_obj(base: Any, update: Any) -> Optional[dict[str, Any]]:
    result: dict[str, Any] = {}
    for spec in _SCHEMA[type(update)]:
        base_value = getattr(base, spec.name)
        update_value = getattr(update, spec.name)
        if spec.nested:
            value = _marshal_obj(base_value, update_value)
        else:
            value = marshal_field(base_value, update_value, spec.encoder)
        if value is not None:
            result[spec.name] = value
    return result or None


def marshal_time(time: TimeConfig) -> Optional[dict[str, Any]]:
    """Marshal time settings that differ from the defaults."""
    return _marshal_obj(TimeConfig(), time)


def marshal_app_config(base: AppConfig, update: AppConfig) -> Optional[dict[str, Any]]:
    """Marshal the differences of ``update`` from ``base``; None if identical."""
    return _marshal_obj(base, update)