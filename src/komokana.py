#!/usr/bin/env python


"""

App-Aware kanata Layer Switcher for komorebi


This script bridges komorebi window manager notifications and kanata's TCP
server. It watches windows being shown and focused, resolves the window's
executable and title through a rule table, and asks kanata to switch to the
matching keyboard layer.


Core Features:
- Per-app kanata layer switching with title overrides
- Match strategies: Equals, StartsWith, EndsWith, Contains
- Layer overrides and suppression while virtual keys are held down
- Automatic reconnection to both komorebi and kanata
- Optionally mirror the active layer to a temp file

Usage:
    komokana -p PORT -d DEFAULT_LAYER [options]

Dependencies:
- Python >= 3.9
- kanata with the TCP server enabled (-p)
- komorebi / komorebic
- pywin32 (for the komorebi pipe and key state probing)
- PyYAML (for YAML configuration files)
"""

import argparse
import codecs
import json
import logging
import os
import re
import signal
import socket
import subprocess
import sys
import tempfile
import threading
from time import sleep
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Literal, NoReturn, Optional, Tuple, Union

import yaml


SCRIPT_VERSION = "0.2.0"

NAME = "komokana"
RETRY_INTERVAL = 5
LAYER_TMPFILE = "kanata_layer"

# Errors after which a channel reconnects instead of giving up.
RESET_ERRORS = (ConnectionResetError, ConnectionAbortedError, BrokenPipeError)


log = logging.getLogger()

KeyProbe = Callable[[int], int]


class Strategy(Enum):
    """How a configured pattern is compared with a process name or title."""

    EQUALS = "Equals"
    STARTS_WITH = "StartsWith"
    ENDS_WITH = "EndsWith"
    CONTAINS = "Contains"

    def matches(self, value: str, pattern: str) -> bool:
        if self is Strategy.STARTS_WITH:
            return value.startswith(pattern)
        if self is Strategy.ENDS_WITH:
            return value.endswith(pattern)
        if self is Strategy.CONTAINS:
            return pattern in value
        return value == pattern


class Event(Enum):
    SHOW = "Show"
    FOCUS_CHANGE = "FocusChange"


EVENT_KINDS = {e.value for e in Event}


@dataclass(frozen=True)
class TitleOverride:
    title: str
    strategy: Strategy
    target_layer: str


@dataclass(frozen=True)
class VirtualKeyOverride:
    virtual_key_code: int
    target_layer: str


@dataclass(frozen=True)
class Rule:
    exe: str
    target_layer: str
    strategy: Strategy = Strategy.EQUALS
    title_overrides: Tuple[TitleOverride, ...] = ()
    virtual_key_overrides: Tuple[VirtualKeyOverride, ...] = ()
    virtual_key_ignores: Tuple[int, ...] = ()


@dataclass(frozen=True)
class WindowNotification:
    """The part of a komorebi notification the bridge acts on."""

    kind: str
    exe: str
    title: Optional[str]

    @classmethod
    def parse(cls, data: str) -> Optional["WindowNotification"]:
        """
        Decode a komorebi notification.

        Raises ValueError when the data is not JSON. Returns None when the JSON
        does not carry `event.type` and `event.content[1].{exe,title}`.
        """
        payload = json.loads(data)
        event = payload.get("event") if isinstance(payload, dict) else None
        if not isinstance(event, dict):
            return None

        kind = event.get("type")
        content = event.get("content")
        if not isinstance(kind, str) or not isinstance(content, list):
            return None
        if len(content) < 2 or not isinstance(content[1], dict):
            return None

        exe = content[1].get("exe")
        title = content[1].get("title")
        if not isinstance(exe, str) or not isinstance(title, str):
            return None
        return cls(kind=kind, exe=exe, title=title)


def parse_layer_change(data: str) -> Optional[str]:
    """Return `LayerChange.new` from a kanata message, or None for other messages."""
    payload = json.loads(data)
    if not isinstance(payload, dict):
        return None
    change = payload.get("LayerChange")
    if not isinstance(change, dict):
        return None
    new = change.get("new")
    return new if isinstance(new, str) else None


# pylint: disable=invalid-name
class utils:

    @staticmethod
    def is_blank(s: str) -> bool:
        """Check if a string is empty/whitespace only."""
        return not s.strip()

    @staticmethod
    def validate_port(port: Union[int, str]) -> tuple[str, int]:
        """Validate a port number or an IP:PORT combination and return (host, port)."""
        port_str = str(port)
        if utils._is_valid_port(port_str):
            return ("127.0.0.1", int(port_str))  # default host localhost
        if utils._is_valid_ip_port(port_str):
            host, port_part = port_str.split(":")
            return (host, int(port_part))

        fatal(
            "Invalid port '%s': Please specify either a port number (e.g., 10000) or "
            "an IP address with port (e.g., 127.0.0.1:10000).",
            port,
        )

    @staticmethod
    def _is_valid_port(port: Union[int, str]) -> bool:
        if isinstance(port, int):
            return 0 < port <= 65535
        if isinstance(port, str) and port.isdigit():
            return 0 < int(port) <= 65535
        return False

    @staticmethod
    def _is_valid_ip_port(value: str) -> bool:
        match = re.fullmatch(r"(\d{1,3}(?:\.\d{1,3}){3}):(\d{1,5})", value)
        if not match:
            return False

        ip, port_str = match.groups()
        if not utils._is_valid_port(int(port_str)):
            return False
        return all(0 <= int(o) <= 255 for o in ip.split("."))

    @staticmethod
    def subscribe(name: str = NAME) -> None:
        """Ask komorebi to publish notifications to the pipe `name`, retrying until it does."""
        cmd = ["komorebic.exe", "subscribe", name]
        while True:
            try:
                result = subprocess.run(cmd, capture_output=True, text=True, check=False)
            except FileNotFoundError:
                fatal("komorebic.exe was not found, make sure komorebi is installed.")
            if result.returncode == 0:
                return
            log.warning(
                "komorebic.exe failed with error code %s, retrying in %d seconds...",
                result.returncode,
                RETRY_INTERVAL,
            )
            sleep(RETRY_INTERVAL)

    @staticmethod
    def resolve_config_path(raw_path: Union[str, Path]) -> Path:
        """Expand `~` and make the configuration path absolute."""
        path = Path(raw_path).expanduser()
        return path.parent.resolve() / path.name

    @staticmethod
    def key_probe() -> Optional[KeyProbe]:
        """Return GetKeyState when the platform can report virtual key state."""
        if sys.platform != "win32":
            return None
        try:
            import win32api  # pylint: disable=import-outside-toplevel
        except ImportError:
            log.warning("pywin32 is not installed, virtual key rules are disabled.")
            return None
        return win32api.GetKeyState


# pylint: disable=too-few-public-methods
class Config:
    """Load and validate the rule table from a YAML or JSON file."""

    RULE_KEYS = {
        "exe",
        "strategy",
        "target_layer",
        "title_overrides",
        "virtual_key_overrides",
        "virtual_key_ignores",
    }
    TITLE_OVERRIDE_KEYS = {"title", "strategy", "target_layer"}
    KEY_OVERRIDE_KEYS = {"virtual_key_code", "targer_layer", "target_layer"}

    def __init__(self, path: Union[str, Path]):
        self._path = str(path)
        self.rules: Tuple[Rule, ...] = tuple(
            self._build_rule(raw, i + 1) for i, raw in enumerate(self._validate(self._load()))
        )
        log.info("Configuration at '%s' is valid (%d rules).", self._path, len(self.rules))

    def _load(self) -> Any:
        if not os.path.exists(self._path):
            fatal("Configuration file not found: %s", self._path)

        with open(self._path, "r", encoding="utf-8") as file:
            if Path(self._path).suffix.lower() in (".yaml", ".yml"):
                try:
                    data = yaml.safe_load(file)
                except yaml.YAMLError as e:
                    fatal("Failed to decode YAML from '%s': %s", self._path, e)
            else:
                try:
                    data = json.load(file)
                except json.JSONDecodeError as e:
                    fatal("Failed to decode JSON from '%s': %s", self._path, e)

        log.info("Loaded configuration file from '%s'", self._path)
        return data

    def _validate(self, rules: Any) -> list:
        if not isinstance(rules, list):
            fatal("Invalid config format: expected an array.")

        for i, rule in enumerate(rules):
            rule_no = i + 1
            if not isinstance(rule, dict) or not rule:
                fatal(
                    "Invalid config: rule #%d must be a non-empty object "
                    "(key-value pairs).",
                    rule_no,
                )
            self._check_keys(rule, self.RULE_KEYS, f"rule #{rule_no}")
            self._check_string(rule, "exe", f"rule #{rule_no}")
            self._check_string(rule, "target_layer", f"rule #{rule_no}")
            if rule.get("strategy") is not None:
                self._check_strategy(rule, f"rule #{rule_no}")

            for j, override in enumerate(self._check_list(rule, "title_overrides", rule_no)):
                where = f"title override #{j + 1} of rule #{rule_no}"
                if not isinstance(override, dict):
                    fatal("Invalid config: %s must be an object.", where)
                self._check_keys(override, self.TITLE_OVERRIDE_KEYS, where)
                self._check_string(override, "title", where)
                self._check_string(override, "target_layer", where)
                self._check_strategy(override, where)

            for j, override in enumerate(self._check_list(rule, "virtual_key_overrides", rule_no)):
                where = f"virtual key override #{j + 1} of rule #{rule_no}"
                if not isinstance(override, dict):
                    fatal("Invalid config: %s must be an object.", where)
                self._check_keys(override, self.KEY_OVERRIDE_KEYS, where)
                self._check_key_code(override.get("virtual_key_code"), where)
                layer_key = "targer_layer" if "targer_layer" in override else "target_layer"
                self._check_string(override, layer_key, where)

            for code in self._check_list(rule, "virtual_key_ignores", rule_no):
                self._check_key_code(code, f"'virtual_key_ignores' in rule #{rule_no}")

        return rules

    @staticmethod
    def _check_keys(obj: dict, allowed: set, where: str) -> None:
        unexpected = obj.keys() - allowed
        if unexpected:
            fatal(
                "Invalid config: %s contains unexpected key(s): %s. Allowed keys: [%s].",
                where,
                ", ".join(sorted(map(str, unexpected))),
                ", ".join(sorted(allowed)),
            )

    @staticmethod
    def _check_string(obj: dict, key: str, where: str) -> None:
        value = obj.get(key)
        if not isinstance(value, str) or utils.is_blank(value):
            fatal("Invalid config: key '%s' in %s must be a non-empty string.", key, where)

    @staticmethod
    def _check_strategy(obj: dict, where: str) -> None:
        valid = [s.value for s in Strategy]
        if obj.get("strategy") not in valid:
            fatal(
                "Invalid config: 'strategy' in %s must be one of: %s",
                where,
                ", ".join(valid),
            )

    @staticmethod
    def _check_list(rule: dict, key: str, rule_no: int) -> list:
        value = rule.get(key)
        if value is None:
            return []
        if not isinstance(value, list):
            fatal("Invalid config: '%s' in rule #%d must be an array.", key, rule_no)
        return value

    @staticmethod
    def _check_key_code(code: Any, where: str) -> None:
        if isinstance(code, bool) or not isinstance(code, int):
            fatal("Invalid config: virtual key codes in %s must be integers.", where)

    @staticmethod
    def _build_rule(raw: dict, rule_no: int) -> Rule:
        rule = Rule(
            exe=raw["exe"],
            target_layer=raw["target_layer"],
            strategy=Strategy(raw.get("strategy") or Strategy.EQUALS.value),
            title_overrides=tuple(
                TitleOverride(o["title"], Strategy(o["strategy"]), o["target_layer"])
                for o in raw.get("title_overrides") or []
            ),
            virtual_key_overrides=tuple(
                VirtualKeyOverride(o["virtual_key_code"], o.get("targer_layer") or o["target_layer"])
                for o in raw.get("virtual_key_overrides") or []
            ),
            virtual_key_ignores=tuple(raw.get("virtual_key_ignores") or []),
        )
        log.debug("Rule #%d: %s", rule_no, rule)
        return rule

    def resolve_layer(
        self,
        event: Event,
        exe: str,
        title: Optional[str],
        default: Optional[str],
        key_probe: Optional[KeyProbe] = None,
    ) -> Optional[str]:
        """
        Resolve the layer kanata should switch to for a window event.

        Every rule is evaluated in order and a later match overwrites the layer
        chosen by an earlier one. Title overrides fall back to the rule's own
        layer when none of them match. While a key listed in
        `virtual_key_ignores` is held down the result is cleared. Returns None
        when nothing should be sent.
        """
        focus = event is Event.FOCUS_CHANGE
        layer = default if focus else None

        for rule in self.rules:
            if not rule.strategy.matches(exe, rule.exe):
                continue

            if focus:
                layer = rule.target_layer

            if title is not None and rule.title_overrides:
                for override in rule.title_overrides:
                    if override.strategy.matches(title, override.title):
                        layer = override.target_layer
                if layer is None:
                    layer = rule.target_layer

            if focus and key_probe is not None:
                for key_override in rule.virtual_key_overrides:
                    if key_probe(key_override.virtual_key_code) < 0:
                        layer = key_override.target_layer
                for code in rule.virtual_key_ignores:
                    if key_probe(code) < 0:
                        layer = None

        log.debug("Resolved %s for '%s' (%s) to %s", event.value, exe, title, layer)
        return layer


class ConnectionState:
    """Health of the kanata channel, shared by its reader and the dispatch path."""

    def __init__(self):
        self._disconnected = threading.Event()
        self._reconnect_required = threading.Event()

    @property
    def disconnected(self) -> bool:
        return self._disconnected.is_set()

    @property
    def reconnect_required(self) -> bool:
        return self._reconnect_required.is_set()

    def mark_disconnected(self) -> None:
        self._disconnected.set()

    def mark_reconnected(self) -> None:
        """The reader is back; the writer must open its own connection before sending."""
        self._reconnect_required.set()
        self._disconnected.clear()

    def clear_reconnect_required(self) -> None:
        self._reconnect_required.clear()


class ConnectionHandle:
    """A stream guarded by a lock that is held for a single read or write."""

    def __init__(self, stream):
        self._stream = stream
        self._lock = threading.Lock()

    def read(self, size: int) -> bytes:
        with self._lock:
            return self._stream.recv(size)

    def write(self, data: bytes) -> None:
        with self._lock:
            self._stream.sendall(data)

    def replace(self, stream) -> None:
        """Install a freshly connected stream; the old one must already be closed."""
        with self._lock:
            self._stream = stream

    def close(self) -> None:
        # Not locked: a reader may be blocked inside recv() holding the lock.
        stream = self._stream
        if hasattr(stream, "shutdown"):
            try:
                stream.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass  # Socket may already be closed or reset
        try:
            stream.close()
        except OSError as e:
            log.debug("Ignoring error while closing %s: %s", stream, e)


class Channel:
    """
    Base class for a blocking read loop over a ConnectionHandle.

    Subclasses implement `_reconnect` and `_on_data`. A chunk that is only a
    newline is a keep-alive. Connection resets and empty reads trigger
    `_reconnect`; every other error propagates and stops the loop.
    """

    name = "channel"
    buffer_size = 1024

    def __init__(self, handle: Optional[ConnectionHandle] = None):
        self.handle = handle

    def listen(self) -> NoReturn:
        while True:
            try:
                chunk = self.handle.read(self.buffer_size)
            except RESET_ERRORS as e:
                self._reconnect(e)
                continue

            if not chunk:
                self._reconnect(ConnectionResetError("connection closed by peer"))
                continue
            if chunk == b"\n":
                log.debug("%s keep-alive", self.name)
                continue
            self._on_data(chunk)

    def spawn(self, on_failure: Callable[[str, BaseException], None]) -> threading.Thread:
        """Run `listen` on a daemon thread, reporting whatever ends it to `on_failure`."""

        def run():
            try:
                self.listen()
            except BaseException as e:  # pylint: disable=broad-exception-caught
                on_failure(self.name, e)

        thread = threading.Thread(target=run, name=self.name, daemon=True)
        thread.start()
        return thread

    def close(self) -> None:
        if self.handle:
            log.warning("Closing %s connection", self.name)
            self.handle.close()

    def _reconnect(self, error: BaseException) -> None:
        raise NotImplementedError("Implement in subclass")

    def _on_data(self, chunk: bytes) -> None:
        raise NotImplementedError("Implement in subclass")


class LayerMirror:
    """Remember the layer kanata last reported and optionally write it to a temp file."""

    def __init__(self, tmpfile: bool = False, path: Optional[Path] = None):
        self.tmpfile = tmpfile
        self.path = path or Path(tempfile.gettempdir()) / LAYER_TMPFILE
        self.current: Optional[str] = None

    def update(self, layer: str) -> None:
        self.current = layer
        log.info("current layer: %s", layer)
        if self.tmpfile:
            self.path.write_text(layer, encoding="utf-8")


class Kanata(Channel):
    """
    TCP client for kanata.

    Layer changes are written through one connection while a second handle
    reads kanata's notifications on its own thread. When the reader loses
    the server it flags the shared ConnectionState as disconnected, retries
    until kanata is back and then asks the writer to reconnect lazily.
    """

    name = "kanata"
    buffer_size = 1024

    def __init__(self, addr: Tuple[str, int], state: ConnectionState, mirror: LayerMirror):
        super().__init__()
        self.addr = addr
        self.state = state
        self.mirror = mirror
        self.writer: Optional[ConnectionHandle] = None
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")()

    def _open(self):
        client = socket.create_connection(self.addr)
        client.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        return client

    def connect(self) -> None:
        log.debug("Connecting to %s:%s", *self.addr)
        try:
            client = self._open()
        except OSError as e:
            ip, port = self.addr
            fatal(
                "Kanata connection error: %s, make sure kanata is running with the -p option "
                "(e.g. `-p %s` or `-p %s:%s`).",
                e,
                port,
                ip,
                port,
            )
        self.writer = ConnectionHandle(client)
        self.handle = ConnectionHandle(client.dup())
        log.debug("connected to kanata")

    def _open_with_retry(self):
        while True:
            try:
                return self._open()
            except OSError as e:
                log.warning(
                    "kanata tcp server is not running (%s), retrying connection in %d seconds",
                    e,
                    RETRY_INTERVAL,
                )
                sleep(RETRY_INTERVAL)

    def change_layer(self, layer: str) -> None:
        if self.state.reconnect_required:
            self.writer.close()
            self.writer.replace(self._open_with_retry())
            self.state.clear_reconnect_required()
            log.info("reconnected to kanata on write thread")

        request = json.dumps({"ChangeLayer": {"new": layer}}, separators=(",", ":"))
        try:
            self.writer.write(request.encode("utf-8"))
        except RESET_ERRORS as e:
            # The reader thread notices the same loss and reconnects.
            log.warning("kanata connection lost while sending %s, dropping it: %s", request, e)
            return
        log.debug("request sent: %s", request)

    def _reconnect(self, error: BaseException) -> None:
        self.state.mark_disconnected()
        log.warning("kanata tcp server is no longer running: %s", error)
        self.handle.close()
        self._buffer = ""
        self._decoder.reset()
        self.handle.replace(self._open_with_retry())
        log.info("reconnected to kanata on read thread")
        self.state.mark_reconnected()

    def _on_data(self, chunk: bytes) -> None:
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines[-1]  # Keep only the incomplete piece

        for line in lines[:-1]:
            if not line.strip():
                continue
            log.debug("Received kanata message: %s", line.strip())
            layer = parse_layer_change(line)
            if layer is not None:
                self.mirror.update(layer)

    def close(self) -> None:
        super().close()
        if self.writer:
            self.writer.close()


class BaseSource:
    """A reconnectable byte stream of window manager notifications."""

    def open(self):
        """Establish the subscription and return a stream with recv() and close()."""
        raise NotImplementedError("Implement in subclass")


class PipeStream:
    """recv()/close() over a connected pywin32 named pipe handle."""

    ERROR_BROKEN_PIPE = 109
    ERROR_MORE_DATA = 234

    def __init__(self, pipe, win32pipe, win32file, pywintypes):
        self._pipe = pipe
        self._win32pipe = win32pipe
        self._win32file = win32file
        self._pywintypes = pywintypes

    def recv(self, size: int) -> bytes:
        try:
            hr, data = self._win32file.ReadFile(self._pipe, size)
        except self._pywintypes.error as e:
            if e.winerror == self.ERROR_BROKEN_PIPE:
                raise BrokenPipeError(e.winerror, e.strerror) from e
            raise OSError(e.winerror, e.strerror) from e
        if hr == self.ERROR_MORE_DATA:
            log.debug("komorebi notification exceeds %d bytes and will be truncated", size)
        return bytes(data)

    def close(self) -> None:
        if self._pipe is None:
            return
        pipe, self._pipe = self._pipe, None
        try:
            self._win32pipe.DisconnectNamedPipe(pipe)
        except self._pywintypes.error:
            pass  # Never connected or already gone
        self._win32file.CloseHandle(pipe)


class Komorebi(BaseSource):
    """komorebi notifications delivered through the named pipe `\\\\.\\pipe\\komokana`."""

    ERROR_PIPE_CONNECTED = 535

    def __init__(self, name: str = NAME):
        # pylint: disable=import-outside-toplevel
        try:
            import pywintypes
            import win32file
            import win32pipe
        except ImportError as exc:
            fatal("Missing dependency: pywin32 is required for komorebi support. (%s)", exc)

        self.name = name
        self.path = rf"\\.\pipe\{name}"
        self._win32pipe = win32pipe
        self._win32file = win32file
        self._pywintypes = pywintypes

    def open(self) -> PipeStream:
        win32pipe = self._win32pipe
        pipe = win32pipe.CreateNamedPipe(
            self.path,
            win32pipe.PIPE_ACCESS_DUPLEX,
            win32pipe.PIPE_TYPE_MESSAGE | win32pipe.PIPE_READMODE_MESSAGE | win32pipe.PIPE_WAIT,
            1,
            EventFeed.buffer_size,
            EventFeed.buffer_size,
            0,
            None,
        )
        utils.subscribe(self.name)
        try:
            win32pipe.ConnectNamedPipe(pipe, None)
        except self._pywintypes.error as e:
            if e.winerror != self.ERROR_PIPE_CONNECTED:
                self._win32file.CloseHandle(pipe)
                raise OSError(e.winerror, e.strerror) from e
        log.debug("connected to komorebi on %s", self.path)
        return PipeStream(pipe, win32pipe, self._win32file, self._pywintypes)


class EventFeed(Channel):
    """Read loop over the window manager's notification stream."""

    name = "komorebi"
    buffer_size = 8192

    def __init__(self, source: BaseSource, on_notification: Callable[[WindowNotification], None]):
        super().__init__()
        self.source = source
        self.on_notification = on_notification

    def connect(self) -> None:
        self.handle = ConnectionHandle(self.source.open())

    def _reconnect(self, error: BaseException) -> None:
        log.warning("komorebi is no longer running: %s", error)
        # The pipe allows a single instance, so the old one goes before open().
        self.handle.close()
        self.handle.replace(self.source.open())
        log.warning("reconnected to komorebi")

    def _on_data(self, chunk: bytes) -> None:
        try:
            notification = WindowNotification.parse(chunk.decode("utf-8"))
        except (ValueError, RecursionError) as e:  # Decode errors and absurd nesting
            log.debug("discarding malformed komorebi notification: %s", e)
            return

        if notification is None or notification.kind not in EVENT_KINDS:
            return
        log.debug("processing komorebi notification: %s", notification.kind)
        self.on_notification(notification)


class Bridge:
    """Route komorebi notifications through the rule table to kanata."""

    def __init__(
        self,
        cfg: Config,
        source: BaseSource,
        kanata: Kanata,
        default_layer: str,
        state: ConnectionState,
        key_probe: Optional[KeyProbe] = None,
    ):
        self.cfg = cfg
        self.kanata = kanata
        self.default_layer = default_layer
        self.state = state
        self.key_probe = key_probe
        self.feed = EventFeed(source, self.handle)
        self._failed = threading.Event()
        self._failure: Optional[Tuple[str, BaseException]] = None

    def handle(self, notification: WindowNotification) -> None:
        event = Event(notification.kind)
        layer = self.cfg.resolve_layer(
            event,
            notification.exe,
            notification.title,
            self.default_layer if event is Event.FOCUS_CHANGE else None,
            self.key_probe,
        )
        if layer is None:
            return

        if self.state.disconnected:
            log.info(
                "kanata is currently disconnected, will not try to send this ChangeLayer request"
            )
            return
        self.kanata.change_layer(layer)

    def _on_failure(self, name: str, error: BaseException) -> None:
        self._failure = (name, error)
        self._failed.set()

    def run(self) -> NoReturn:
        """Start both listeners and block until one of them stops."""
        self.feed.connect()
        self.kanata.spawn(self._on_failure)
        self.feed.spawn(self._on_failure)
        log.info("listening")

        while not self._failed.wait(1.0):
            pass

        name, error = self._failure
        fatal("%s listener stopped: %s: %s", name, type(error).__name__, error)

    def close(self) -> None:
        self.feed.close()
        self.kanata.close()


class ColorFormatter(logging.Formatter):
    """Formatter that adds ANSI color to log levels for terminal output."""

    COLORS: dict[str, str] = {
        # fmt: off
        "DEBUG":    "\033[34m",  # Blue
        "INFO":     "\033[32m",  # Green
        "WARNING":  "\033[33m",  # Yellow
        "ERROR":    "\033[31m",  # Red
    }
    RESET: str = "\033[0m"
    BOLD: str = "\033[1m"
    DIM: str = "\033[2m"

    def format(self, record):
        level = record.levelname
        color = self.COLORS.get(level, "")
        time_str = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        thread = f"{self.DIM}{record.threadName}{self.RESET}"

        return f"{time_str} {self.BOLD}{color}[{level}]{self.RESET} {thread} {record.getMessage()}"


def config_logger(
    ll: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
):
    """Configure the logger to output to stdout with optional color if attached to a terminal."""

    if log.hasHandlers():
        log.handlers.clear()

    log.setLevel(getattr(logging, ll, logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    if sys.stdout.isatty():
        handler.setFormatter(ColorFormatter("%(message)s"))
    else:
        handler.setFormatter(logging.Formatter("[%(levelname)s] %(threadName)s %(message)s"))
    log.addHandler(handler)


def fatal(message: str, *args: object) -> NoReturn:
    """Log an error message and exit the program."""
    log.error(message, *args)
    sys.exit(1)


def setup_signals(bridge: Bridge):
    """Register signal handlers for graceful shutdown."""

    def handle_signal(signum, _frame):
        name = signal.Signals(signum).name
        log.warning("Received signal %s. Exiting gracefully...", name)
        bridge.close()
        sys.exit(1)

    for name in ("SIGINT", "SIGTERM", "SIGTSTP"):
        if hasattr(signal, name):  # SIGTSTP is missing on Windows
            signal.signal(getattr(signal, name), handle_signal)


def parse_args(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="kanata layer switcher based on komorebi window events."
    )
    parser.add_argument(
        "-p",
        "--port",
        type=utils.validate_port,
        required=True,
        help="kanata server port (e.g., 10000) or full address (e.g., 127.0.0.1:10000)",
    )
    parser.add_argument(
        "-c",
        "--configuration",
        default="~/komokana.yaml",
        metavar="PATH",
        help="Path to the YAML or JSON configuration file (default: ~/komokana.yaml)",
    )
    parser.add_argument(
        "-d",
        "--default-layer",
        required=True,
        metavar="LAYER",
        help="Layer to default to when an active window doesn't match any rules",
    )
    parser.add_argument(
        "-t",
        "--tmpfile",
        action="store_true",
        help=f"Write the current layer to {Path(tempfile.gettempdir()) / LAYER_TMPFILE}",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Set logging level (default: INFO)",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Set logging level to ERROR (overrides --log-level)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Set logging level to DEBUG (overrides --log-level)",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"komokana {SCRIPT_VERSION}",
        help="Show komokana version",
    )
    return parser.parse_args(argv)


def main():
    args = parse_args()
    ll = "ERROR" if args.quiet else "DEBUG" if args.debug else args.log_level

    config_logger(ll)

    cfg = Config(utils.resolve_config_path(args.configuration))
    state = ConnectionState()
    kanata = Kanata(args.port, state, LayerMirror(args.tmpfile))
    kanata.connect()

    bridge = Bridge(cfg, Komorebi(), kanata, args.default_layer, state, utils.key_probe())
    setup_signals(bridge)
    bridge.run()


if __name__ == "__main__":
    main()
