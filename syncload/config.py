"""Run configuration: dataclasses plus the JSON loader used by the CLI."""

from __future__ import annotations

import enum
import json
import re
import ssl
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .errors import ConfigError
from .metrics import Threshold, parse_thresholds
from .payload import PayloadGenerator, PayloadMode

DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
DURATION_UNITS = {"ms": 1, "s": 1000, "m": 60_000, "h": 3_600_000}

DEFAULT_TRANSACTIONS = [[{"msg": "hello", "code": 13}, {"msg": "test", "code": 42}]]


class Pacing(str, enum.Enum):
    BURST = "burst"
    INTERVAL = "interval"
    REQUEST_RESPONSE = "request_response"


class Correlation(str, enum.Enum):
    EXACT = "exact"
    ORDERED = "ordered"


@dataclass
class TLSOptions:
    enabled: bool = False
    verify: bool = True
    ca_file: Optional[str] = None
    cert_file: Optional[str] = None
    key_file: Optional[str] = None


@dataclass
class TargetConfig:
    url: str = "ws://127.0.0.1:8082/ws"
    user_param: str = "userId"
    headers: Dict[str, str] = field(default_factory=dict)
    tls: TLSOptions = field(default_factory=TLSOptions)

    def endpoint_url(self, user_id: Any) -> str:
        parts = urlsplit(self.url)
        query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != self.user_param]
        if self.user_param:
            query.append((self.user_param, str(user_id)))
        return urlunsplit(parts._replace(query=urlencode(query)))

    @property
    def secure(self) -> bool:
        return self.tls.enabled or self.url.lower().startswith("wss://")


@dataclass
class SessionConfig:
    target: TargetConfig = field(default_factory=TargetConfig)
    mode: PayloadMode = PayloadMode.STRUCTURAL
    pacing: Optional[Pacing] = None
    message_count: Optional[int] = 10
    session_duration_ms: Optional[int] = None
    initial_burst: int = 1
    burst_delay_ms: int = 0
    send_interval_ms: int = 200
    think_time_ms: int = 0
    connect_timeout_ms: int = 10000
    stall_timeout_ms: int = 35000
    close_grace_ms: int = 1000
    ping_interval_ms: Optional[int] = None
    max_message_bytes: int = 16 * 1024 * 1024
    transactions: List[List[Dict[str, Any]]] = field(default_factory=list)
    payload: PayloadGenerator = field(default_factory=PayloadGenerator)

    @property
    def effective_pacing(self) -> Pacing:
        if self.pacing is not None:
            return self.pacing
        if self.mode is PayloadMode.SEQUENCE:
            return Pacing.REQUEST_RESPONSE
        if self.mode is PayloadMode.REQUEST:
            return Pacing.BURST
        return Pacing.INTERVAL

    @property
    def correlation(self) -> Correlation:
        if self.mode is PayloadMode.REQUEST:
            return Correlation.ORDERED
        return Correlation.EXACT


@dataclass
class LoadConfig:
    vus: int = 1
    duration_ms: Optional[int] = None
    iterations: Optional[int] = None
    start_index: int = 1
    ramp_interval_ms: int = 0
    connect_concurrency: int = 0
    max_samples: Optional[int] = None
    log_level: str = "INFO"
    thresholds: List[Threshold] = field(default_factory=list)


@dataclass
class RunConfig:
    load: LoadConfig = field(default_factory=LoadConfig)
    session: SessionConfig = field(default_factory=SessionConfig)


def parse_duration(value: Any) -> Optional[int]:
    """Milliseconds from an int (ms) or a string such as ``"60s"``."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ConfigError(f"negative duration: {value!r}")
        return int(value)
    match = DURATION_RE.match(str(value))
    if not match:
        raise ConfigError(f"invalid duration: {value!r}")
    number, unit = match.groups()
    return int(float(number) * DURATION_UNITS[unit or "ms"])


def _int(value: Any, name: str, minimum: Optional[int] = None) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    try:
        result = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from exc
    if minimum is not None and result < minimum:
        raise ConfigError(f"{name} must be at least {minimum}, got {result}")
    return result


def _optional_int(value: Any, name: str) -> Optional[int]:
    if value is None:
        return None
    return _int(value, name, minimum=0)


def _section(data: Dict[str, Any], key: str, name: str) -> Dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{name} must be an object")
    return value


def _enum(cls: Any, value: Any, name: str) -> Any:
    try:
        return cls(str(value).lower())
    except ValueError as exc:
        choices = ", ".join(item.value for item in cls)
        raise ConfigError(f"{name} must be one of {choices}, got {value!r}") from exc


def parse_tls_options(data: Dict[str, Any]) -> TLSOptions:
    return TLSOptions(
        enabled=bool(data.get("enabled", False)),
        verify=bool(data.get("verify", True)),
        ca_file=data.get("ca_file"),
        cert_file=data.get("cert"),
        key_file=data.get("key"),
    )


def parse_target(data: Dict[str, Any]) -> TargetConfig:
    headers = _section(data, "headers", "target.headers")
    return TargetConfig(
        url=str(data.get("url", TargetConfig.url)),
        user_param=str(data.get("user_param", "userId")),
        headers={str(k): str(v) for k, v in headers.items()},
        tls=parse_tls_options(_section(data, "tls", "target.tls")),
    )


def parse_transactions(data: Any) -> List[List[Dict[str, Any]]]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise ConfigError("session.transactions must be an array of arrays")
    transactions = []
    for txn in data:
        if not isinstance(txn, list):
            raise ConfigError("each transaction must be an array of {msg, code} objects")
        messages = []
        for item in txn:
            if not isinstance(item, dict) or "msg" not in item or "code" not in item:
                raise ConfigError(f"transaction entry needs msg and code: {item!r}")
            messages.append({"msg": str(item["msg"]), "code": _int(item["code"], "transaction code")})
        transactions.append(messages)
    return transactions


def parse_payload(data: Dict[str, Any]) -> PayloadGenerator:
    defaults = PayloadGenerator()
    sizes = {}
    for name in ("paragraphs", "changes_per_paragraph", "collaborators",
                 "bulk_bytes", "bulk_edits", "bulk_edit_bytes"):
        sizes[name] = _int(data.get(name, getattr(defaults, name)), f"session.payload.{name}", minimum=0)
    return PayloadGenerator(**sizes)


def _duration(data: Dict[str, Any], key: str, default: int) -> int:
    return parse_duration(data.get(key, default)) or 0


def parse_session(data: Dict[str, Any], target: TargetConfig) -> SessionConfig:
    defaults = SessionConfig()
    mode = _enum(PayloadMode, data.get("mode", defaults.mode.value), "session.mode")
    pacing = data.get("pacing")
    transactions = parse_transactions(data.get("transactions"))
    if mode is PayloadMode.REQUEST and "transactions" not in data:
        transactions = [list(txn) for txn in DEFAULT_TRANSACTIONS]
    message_count = data.get("message_count", defaults.message_count)
    return SessionConfig(
        target=target,
        mode=mode,
        pacing=_enum(Pacing, pacing, "session.pacing") if pacing is not None else None,
        message_count=_optional_int(message_count, "session.message_count"),
        session_duration_ms=parse_duration(data.get("duration")),
        initial_burst=_int(data.get("initial_burst", defaults.initial_burst), "session.initial_burst", minimum=0),
        burst_delay_ms=_duration(data, "burst_delay", defaults.burst_delay_ms),
        send_interval_ms=_duration(data, "send_interval", defaults.send_interval_ms),
        think_time_ms=_duration(data, "think_time", defaults.think_time_ms),
        connect_timeout_ms=_duration(data, "connect_timeout", defaults.connect_timeout_ms),
        stall_timeout_ms=_duration(data, "stall_timeout", defaults.stall_timeout_ms),
        close_grace_ms=_duration(data, "close_grace", defaults.close_grace_ms),
        ping_interval_ms=parse_duration(data.get("ping_interval")),
        max_message_bytes=_int(data.get("max_message_bytes", defaults.max_message_bytes),
                               "session.max_message_bytes", minimum=1),
        transactions=transactions,
        payload=parse_payload(_section(data, "payload", "session.payload")),
    )


def parse_load(data: Dict[str, Any], thresholds: Dict[str, Any]) -> LoadConfig:
    return LoadConfig(
        vus=_int(data.get("vus", 1), "load.vus", minimum=1),
        duration_ms=parse_duration(data.get("duration")),
        iterations=_optional_int(data.get("iterations"), "load.iterations"),
        start_index=_int(data.get("start_index", 1), "load.start_index", minimum=0),
        ramp_interval_ms=_duration(data, "ramp_interval", 0),
        connect_concurrency=_int(data.get("connect_concurrency", 0), "load.connect_concurrency", minimum=0),
        max_samples=_optional_int(data.get("max_samples"), "load.max_samples"),
        log_level=str(data.get("log_level", "INFO")),
        thresholds=parse_thresholds(thresholds),
    )


def parse_run_config(data: Dict[str, Any]) -> RunConfig:
    if not isinstance(data, dict):
        raise ConfigError("configuration root must be an object")
    target = parse_target(_section(data, "target", "target"))
    return RunConfig(
        load=parse_load(_section(data, "load", "load"), _section(data, "thresholds", "thresholds")),
        session=parse_session(_section(data, "session", "session"), target),
    )


def load_json_config(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        try:
            return json.load(fh)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"{path}: {exc}") from exc


def discover_config(path_arg: Optional[Path]) -> Optional[Path]:
    if path_arg:
        candidate = path_arg.expanduser()
        if candidate.is_file():
            return candidate
        raise FileNotFoundError(f"config file not found: {candidate}")

    search_root = Path.cwd()
    for name in ("syncload.json", "syncload.sample.json"):
        candidate = search_root / name
        if candidate.is_file():
            return candidate

    matches = sorted(search_root.glob("syncload*.json"))
    if matches:
        return matches[0]
    return None


def create_ssl_context(tls: TLSOptions) -> ssl.SSLContext:
    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
    if not tls.verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    if tls.ca_file:
        context.load_verify_locations(tls.ca_file)
    if tls.cert_file:
        context.load_cert_chain(tls.cert_file, tls.key_file)
    return context
