#!/usr/bin/env python3
"""
scripto.py

Base framework for command-line scripts: argument parsing, logging, PID-file
admission control and failure notification.
"""

from __future__ import annotations

import copy
import getpass
import hashlib
import html
import json
import logging
import os
import pprint
import re
import signal
import socket
import sys
import tempfile
import threading
import time
import traceback
from collections.abc import Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Union

try:
    import yaml
except ImportError:  # pragma: no cover - dependency check at runtime
    yaml = None

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX platforms run without the admission lock
    fcntl = None

from scripto_notifier import NotifierError, NotifierSettings, build_notifier


EXIT_SUCCESS = 0
EXIT_RUN_FAILURE = 1
EXIT_START_FAILURE = 2

LOGGER_NAME = "scripto"
PID_DIR_ENV = "SCRIPTO_PID_DIR"
DEFAULT_PID_DIR_NAME = "script-pid"
LOCK_FILE_NAME = ".lock"
INDENT = "    "

STATE_INITIALIZED = "initialized"
STATE_ARGUMENTS_BOUND = "arguments_bound"
STATE_VALIDATED = "validated"
STATE_ADMITTED = "admitted"
STATE_SKIPPED = "skipped"
STATE_RUNNING = "running"
STATE_SUCCEEDED = "succeeded"
STATE_FAILED = "failed"
STATE_HELP_REQUESTED = "help_requested"
STATE_START_FAILURE = "start_failure"

TERMINAL_STATES = {
    STATE_SUCCEEDED,
    STATE_FAILED,
    STATE_SKIPPED,
    STATE_HELP_REQUESTED,
    STATE_START_FAILURE,
}
# STATE_FAILED is additionally reachable from every non-terminal state.
TRANSITIONS = {
    STATE_INITIALIZED: {STATE_ARGUMENTS_BOUND},
    STATE_ARGUMENTS_BOUND: {STATE_VALIDATED},
    STATE_VALIDATED: {STATE_HELP_REQUESTED, STATE_START_FAILURE, STATE_ADMITTED, STATE_SKIPPED},
    STATE_ADMITTED: {STATE_RUNNING},
    STATE_RUNNING: {STATE_SUCCEEDED},
}
STATE_EXIT_CODES = {
    STATE_HELP_REQUESTED: EXIT_SUCCESS,
    STATE_SUCCEEDED: EXIT_SUCCESS,
    STATE_SKIPPED: EXIT_SUCCESS,
    STATE_START_FAILURE: EXIT_START_FAILURE,
    STATE_FAILED: EXIT_RUN_FAILURE,
}

LONG_ARG_RE = re.compile(r"^--(?P<key>[^=]+)(?:=(?P<value>.*))?$", re.DOTALL)
SHORT_ARG_RE = re.compile(r"^-(?P<keys>[A-Za-z]+)$")
POSITIVE_INT_RE = re.compile(r"^[1-9][0-9]*$")
LETTER_RE = re.compile(r"[A-Za-z]")
UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9._-]")
STACK_TRACE_RE = re.compile(r"stack trace:|traceback \(most recent call last\)", re.IGNORECASE)
TYPED_LITERALS = {
    "null": None,
    "NULL": None,
    "true": True,
    "TRUE": True,
    "false": False,
    "FALSE": False,
}

CONFIG_KEYS = {"name", "summary", "arguments", "callback", "pid_dir", "log_file", "notifier"}
ARGUMENT_KEYS = {"short", "description", "default_value"}
DEFAULT_CONFIG: Dict[str, Any] = {
    "arguments": {
        "debug": {
            "short": "d",
            "description": "Enable additional logging and prompts.",
        },
        "email": {
            "short": "e",
            "description": "Email address for notifications, such as unrecoverable errors.",
        },
        "help": {
            "short": "h",
            "description": "Display script options and details (this output).",
        },
        "max_processes": {
            "description": "The maximum number of concurrent running instances of a process-category combination.",
        },
        "pid_category": {
            "description": "Categorizes processes for use in conjunction with max_processes.",
        },
    },
}


class ScriptError(Exception):
    """Base error for scripto."""


class ConfigError(ScriptError):
    """Config or argument definition error."""


class ScriptTerminated(ScriptError):
    """Raised inside the run body when a termination signal arrives."""


logger = logging.getLogger(LOGGER_NAME)


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None) -> logging.Logger:
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    if not logger.handlers:
        logger.setLevel(level)
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)
    if log_file:
        log_path = os.path.abspath(log_file)
        attached = any(
            isinstance(handler, logging.FileHandler) and handler.baseFilename == log_path
            for handler in logger.handlers
        )
        if not attached:
            file_handler = logging.FileHandler(log_path, encoding="utf-8")
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
    return logger


def require_yaml_dependency() -> None:
    if yaml is None:
        raise ScriptError("Missing required dependency: PyYAML. Install with: pip install PyYAML")


def merge_config(defaults: Dict[str, Any], overrides: Mapping) -> Dict[str, Any]:
    """Recursively merge ``overrides`` into a copy of ``defaults``; overrides win."""
    out = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(out.get(key), dict):
            out[key] = merge_config(out[key], value)
        else:
            out[key] = copy.deepcopy(value)
    return out


def parse_positive_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and POSITIVE_INT_RE.match(value):
        return int(value)
    return None


def current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return str(os.getuid())


def default_pid_dir() -> Path:
    env_dir = os.environ.get(PID_DIR_ENV, "").strip()
    if env_dir:
        return Path(env_dir)
    return Path(tempfile.gettempdir()) / DEFAULT_PID_DIR_NAME


def process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.getpgid(pid)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def _accumulate(parsed: Dict[str, Any], key: str, value: Any) -> None:
    if key not in parsed:
        parsed[key] = value
    elif isinstance(parsed[key], list):
        parsed[key].append(value)
    else:
        parsed[key] = [parsed[key], value]


def _fill(parsed: Dict[str, Any], key: str, value: Any) -> None:
    if isinstance(parsed[key], list):
        parsed[key][-1] = value
    else:
        parsed[key] = value


def parse_cli_arguments(tokens: Sequence[str]) -> Dict[str, Any]:
    """
    Convert raw CLI tokens into a mapping of argument key to value.

    ``--name`` and ``-abc`` introduce keys that default to ``True``; the next bare
    token fills them.  Bare tokens with no pending key are positional and are not
    stored in the result.
    """
    parsed: Dict[str, Any] = {}
    pending: List[str] = []
    position = 0
    for token in tokens:
        token = str(token)
        long_match = LONG_ARG_RE.match(token)
        short_match = None if long_match else SHORT_ARG_RE.match(token)
        if long_match:
            key = long_match.group("key")
            _accumulate(parsed, key, True)
            if long_match.group("value") is None:
                pending = [key]
            else:
                _fill(parsed, key, long_match.group("value"))
                pending = []
        elif short_match:
            pending = list(short_match.group("keys"))
            for key in pending:
                _accumulate(parsed, key, True)
        elif pending:
            for key in pending:
                _fill(parsed, key, token)
            pending = []
        else:
            position += 1
            logger.debug("Ignoring positional argument #%s: %r", position, token)
    return parsed


@dataclass(frozen=True)
class ArgumentDefinition:
    name: str
    short: Optional[str] = None
    description: str = ""
    default_value: Any = None

    @property
    def has_default(self) -> bool:
        return self.default_value is not None


class ArgumentRegistry:
    """The recognized arguments of a script, keyed and iterated by long name."""

    def __init__(self, definitions: Sequence[ArgumentDefinition] = ()):
        by_name: Dict[str, ArgumentDefinition] = {}
        shorts: Dict[str, str] = {}
        for definition in definitions:
            if not isinstance(definition.name, str) or not definition.name:
                raise ConfigError("Error: argument names must be non-empty strings.")
            if definition.name in by_name:
                raise ConfigError(f'Error: Duplicate argument name "{definition.name}".')
            if definition.short is not None:
                if not isinstance(definition.short, str) or len(definition.short) != 1:
                    raise ConfigError(
                        f'Error: arguments.{definition.name}.short must be a single character.'
                    )
                if definition.short in shorts:
                    raise ConfigError(
                        f'Error: Short alias "{definition.short}" is used by both '
                        f'"{shorts[definition.short]}" and "{definition.name}".'
                    )
                shorts[definition.short] = definition.name
            by_name[definition.name] = definition
        self._definitions = dict(sorted(by_name.items()))

    @classmethod
    def from_config(cls, raw: Any) -> "ArgumentRegistry":
        if not isinstance(raw, Mapping):
            raise ConfigError("Error: arguments must be a mapping.")
        definitions: List[ArgumentDefinition] = []
        for name, arg_raw in raw.items():
            arg_raw = arg_raw or {}
            if not isinstance(arg_raw, Mapping):
                raise ConfigError(f"Error: arguments.{name} must be a mapping.")
            unknown = set(arg_raw.keys()) - ARGUMENT_KEYS
            if unknown:
                raise ConfigError(f"Error: Unknown keys in arguments.{name}: {sorted(unknown)}.")
            definitions.append(
                ArgumentDefinition(
                    name=name,
                    short=arg_raw.get("short"),
                    description=arg_raw.get("description") or "",
                    default_value=arg_raw.get("default_value"),
                )
            )
        return cls(definitions)

    def definitions(self) -> List[ArgumentDefinition]:
        """Declared arguments sorted by long name."""
        return list(self._definitions.values())

    def __iter__(self) -> Iterator[ArgumentDefinition]:
        return iter(self.definitions())

    def __contains__(self, name: Any) -> bool:
        return name in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def get(self, name: str) -> Optional[ArgumentDefinition]:
        return self._definitions.get(name)

    def resolve_long_name(self, key: Any) -> Optional[str]:
        if key in self._definitions:
            return key
        for definition in self._definitions.values():
            if definition.short is not None and key == definition.short:
                return definition.name
        return None

    def apply_defaults(self, into: Dict[Any, Any]) -> None:
        for definition in self._definitions.values():
            if definition.has_default:
                self.set_argument(into, definition.name, definition.default_value)

    def set_argument(self, into: Dict[Any, Any], key: Any, value: Any) -> None:
        if isinstance(value, str) and value in TYPED_LITERALS:
            value = TYPED_LITERALS[value]

        into[key] = copy.copy(value)
        long_name = self.resolve_long_name(key)
        if long_name is None:
            return
        into[long_name] = copy.copy(value)
        short = self._definitions[long_name].short
        if short is not None:
            into[short] = copy.copy(value)

    def validate(self, key: Any, value: Any) -> List[str]:
        errors: List[str] = []
        long_name = self.resolve_long_name(key)
        if long_name is None:
            if LETTER_RE.search(str(key)):
                errors.append(f'"{key}" is not a recognized option.')
            return errors
        if long_name == "max_processes" and key == long_name and value is not None:
            if parse_positive_int(value) is None:
                errors.append('"max_processes" must be a positive integer.')
        return errors


def compute_category(arguments: Mapping) -> str:
    explicit = arguments.get("pid_category")
    if explicit is not None:
        if isinstance(explicit, list):
            return ",".join(str(item) for item in explicit)
        return str(explicit)
    normalized = {str(key): value for key, value in arguments.items()}
    serialized = json.dumps(normalized, sort_keys=True, default=str)
    return hashlib.sha1(serialized.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# PID registry
# ---------------------------------------------------------------------------


class PidRegistry:
    """
    Persists the PIDs admitted for one (script name, category) pair.

    The record is a JSON array of integers stored at
    ``<pid_dir>/<user>/<script_name>.<category>.pid``.  Read failures are treated
    as an empty record and write failures are logged; neither blocks admission.
    """

    def __init__(
        self,
        script_name: str,
        category: str,
        pid_dir: Union[str, Path, None] = None,
        pid: Optional[int] = None,
        is_alive: Optional[Callable[[int], bool]] = None,
    ):
        self.script_name = script_name
        self.category = category
        self.pid = os.getpid() if pid is None else pid
        self.directory = Path(pid_dir or default_pid_dir()) / current_user()
        filename = "{}.{}.pid".format(
            UNSAFE_FILENAME_RE.sub("_", script_name),
            UNSAFE_FILENAME_RE.sub("_", category),
        )
        self.path = self.directory / filename
        self._is_alive = is_alive or process_alive

    def admit(self, max_processes: Optional[int] = None) -> Optional[int]:
        """Register this PID; returns the admitted count, or None when the limit is reached."""
        with self._locked():
            active = self._load_active()
            if max_processes is not None and len(active) + 1 > max_processes:
                logger.debug(
                    "Admission rejected for %s: %s active, max_processes=%s",
                    self.path,
                    len(active),
                    max_processes,
                )
                return None
            active.append(self.pid)
            self._store(active)
            return len(active)

    def release(self) -> int:
        with self._locked():
            active = self._load_active()
            self._store(active)
            return len(active)

    def active_pids(self) -> List[int]:
        return self._load_active()

    def _read_pids(self) -> List[int]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as exc:
            logger.warning("Unable to read PID record %s: %s", self.path, exc)
            return []
        try:
            payload = json.loads(raw)
        except ValueError as exc:
            logger.warning("Ignoring malformed PID record %s: %s", self.path, exc)
            return []
        if not isinstance(payload, list):
            logger.warning("Ignoring malformed PID record %s: expected a list", self.path)
            return []
        pids: List[int] = []
        for item in payload:
            if isinstance(item, int) and not isinstance(item, bool) and item not in pids:
                pids.append(item)
        return pids

    def _load_active(self) -> List[int]:
        return [pid for pid in self._read_pids() if pid != self.pid and self._is_alive(pid)]

    def _store(self, pids: List[int]) -> None:
        try:
            if pids:
                self.directory.mkdir(parents=True, exist_ok=True)
                self.path.write_text(json.dumps(pids), encoding="utf-8")
            else:
                self.path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Unable to update PID record %s: %s", self.path, exc)

    @contextmanager
    def _locked(self) -> Iterator[None]:
        handle = None
        if fcntl is not None:
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                handle = open(self.directory / LOCK_FILE_NAME, "a+", encoding="utf-8")
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            except OSError as exc:
                logger.warning("Unable to lock PID directory %s: %s", self.directory, exc)
                if handle is not None:
                    handle.close()
                    handle = None
        try:
            yield
        finally:
            # closing the descriptor drops the flock
            if handle is not None:
                handle.close()


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


class LineWriter:
    """
    Line-oriented writer for script output.

    Supports partial lines, an optional timestamp prefix at the start of each
    line and an indentation level owned by the instance.
    """

    def __init__(self, stream=None):
        self._stream = stream
        self.indent_level = 0
        self.at_line_start = True

    @property
    def stream(self):
        return self._stream if self._stream is not None else sys.stdout

    def write_line(self, text: Any = "", append_eol: bool = True, timestamp: bool = True) -> None:
        if not isinstance(text, str):
            text = pprint.pformat(text)

        stream = self.stream
        lines = text.split("\n")
        while lines:
            line = lines.pop(0)
            if lines or line != "":
                if self.at_line_start:
                    if timestamp:
                        stream.write(self._timestamp())
                    stream.write(INDENT * self.indent_level)
                if lines:
                    stream.write(line + "\n")
                    self.at_line_start = True
                else:
                    stream.write(line)
                    self.at_line_start = False

        if append_eol:
            if timestamp and self.at_line_start:
                stream.write(self._timestamp())
            stream.write("\n")
            self.at_line_start = True
        stream.flush()

    def indent(self, size: int = 1) -> int:
        self.indent_level = max(0, self.indent_level + size)
        return self.indent_level

    def unindent(self) -> int:
        return self.indent(-1)

    def reset_indent(self) -> int:
        self.indent_level = 0
        return self.indent_level

    def reset_line(self) -> None:
        self.at_line_start = True

    @staticmethod
    def _timestamp() -> str:
        return "[" + datetime.now().astimezone().isoformat(timespec="seconds") + "] "


def format_argument_errors(errors: Sequence[str]) -> str:
    lines = ["", "ARGUMENT ERROR(S) ENCOUNTERED!!!", ""]
    lines.extend(f"{INDENT}{error}" for error in errors)
    lines.extend(["", 'For more information consider trying "--help".', ""])
    return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# Run bodies and failures
# ---------------------------------------------------------------------------


class NoopRunnable:
    def run(self, script: "Script") -> None:
        return None


class CallbackRunnable:
    def __init__(self, callback: Callable[["Script"], Any]):
        self.callback = callback

    def run(self, script: "Script") -> Any:
        return self.callback(script)


def resolve_runnable(callback: Any):
    if callback is None:
        return NoopRunnable()
    run = getattr(callback, "run", None)
    if callable(run):
        return CallbackRunnable(run)
    if callable(callback):
        return CallbackRunnable(callback)
    raise ConfigError("Error: callback must be callable or provide a run(script) method.")


@dataclass
class Failure:
    message: str
    file: Optional[str] = None
    line: Optional[int] = None
    trace: str = ""

    @staticmethod
    def from_exception(exc: BaseException) -> "Failure":
        frames = traceback.extract_tb(exc.__traceback__)
        frame = frames[-1] if frames else None
        if isinstance(exc, SystemExit):
            text = f"exited with status {exc.code}"
        else:
            text = str(exc)
        message = f"{type(exc).__name__}: {text}" if text else type(exc).__name__
        return Failure(
            message=message,
            file=frame.filename if frame else None,
            line=frame.lineno if frame else None,
            trace="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        )

    @property
    def is_stack_trace(self) -> bool:
        return "\n" in self.message.strip() or bool(STACK_TRACE_RE.search(self.message))

    def describe(self) -> str:
        if self.is_stack_trace or not self.file:
            return self.message
        return f"{self.message} in {self.file} on line {self.line}"


# ---------------------------------------------------------------------------
# Lifecycle controller
# ---------------------------------------------------------------------------


class Script:
    """
    Drives a command-line script through start, validation, admission, run and
    finalization, and maps the outcome to an exit code.

    The run body is either the configured ``callback`` or an override of
    :py:meth:`run`.  Finalization runs exactly once on every exit path.
    """

    def __init__(
        self,
        config: Optional[Mapping] = None,
        notifier=None,
        stdout=None,
        input_func: Optional[Callable[[], str]] = None,
    ):
        if config is None:
            config = {}
        if not isinstance(config, Mapping):
            raise ConfigError("Error: script config must be a mapping.")
        config = dict(config)
        unknown = set(config.keys()) - CONFIG_KEYS
        if unknown:
            raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown)}.")
        callback = config.pop("callback", None)
        for key in ("name", "summary", "log_file"):
            if config.get(key) is not None and not isinstance(config[key], str):
                raise ConfigError(f"Error: {key} must be a string.")

        self.config = merge_config(DEFAULT_CONFIG, config)
        self.registry = ArgumentRegistry.from_config(self.config["arguments"])
        self.config["arguments"] = dict(sorted(self.config["arguments"].items()))
        self.runnable = resolve_runnable(callback)

        self.notifier = notifier
        self.notifier_settings: Optional[NotifierSettings] = None
        if notifier is None:
            try:
                self.notifier_settings = NotifierSettings.from_config(self.config.get("notifier"))
            except NotifierError as exc:
                raise ConfigError(str(exc)) from exc

        self.writer = LineWriter(stdout)
        self._stdout = stdout
        self._input = input_func or input

        self.arguments: Dict[Any, Any] = {}
        self.debug = 0
        self.state = STATE_INITIALIZED
        self.exit_code: Optional[int] = None
        self.executed_file: Optional[str] = None
        self.failure: Optional[Failure] = None
        self.pid_registry: Optional[PidRegistry] = None
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None
        self._finalized = False
        self._sigterm_installed = False
        self._previous_sigterm: Any = None

    @classmethod
    def from_yaml(cls, path: Union[str, Path], callback: Any = None, **kwargs: Any) -> "Script":
        require_yaml_dependency()
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigError(f"Error: Config file not found: {config_path}")
        try:
            payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise ConfigError("Error: Top-level config must be a mapping.")
        if "callback" in payload:
            raise ConfigError("Error: callback cannot be set from a YAML config.")
        if callback is not None:
            payload["callback"] = callback
        return cls(payload, **kwargs)

    @property
    def out(self):
        return self._stdout if self._stdout is not None else sys.stdout

    @property
    def name(self) -> str:
        if self.config.get("name"):
            return self.config["name"]
        if self.executed_file:
            return os.path.basename(self.executed_file)
        if sys.argv and sys.argv[0]:
            return os.path.basename(sys.argv[0])
        return "script"

    @property
    def script_path(self) -> str:
        if self.executed_file:
            return self.executed_file
        if sys.argv and sys.argv[0]:
            return os.path.realpath(sys.argv[0])
        return self.name

    @property
    def notifier_instance(self):
        if self.notifier is None:
            self.notifier = build_notifier(self.notifier_settings)
        return self.notifier

    # -- lifecycle ---------------------------------------------------------

    def start(self, arguments: Union[Mapping, Sequence[str], None] = None) -> int:
        if self.state != STATE_INITIALIZED:
            raise ScriptError("Error: a script can only be started once.")

        try:
            setup_logging(log_file=self.config.get("log_file"))
            self._bind(arguments)
            errors = self._validate()
            self._extract_debug()
            self._dispatch(errors)
        except BaseException as exc:
            if self.state in TERMINAL_STATES:
                raise
            self._fail(exc)
        finally:
            self._finalize()
        return self.exit_code

    def execute(self, argv: Optional[Sequence[str]] = None) -> None:
        raise SystemExit(self.start(sys.argv if argv is None else argv))

    def _transition(self, new_state: str) -> None:
        allowed = TRANSITIONS.get(self.state, set())
        failing = new_state == STATE_FAILED and self.state not in TERMINAL_STATES
        if new_state not in allowed and not failing:
            raise ScriptError(f"Error: invalid lifecycle transition {self.state} -> {new_state}.")
        logger.debug("%s: %s -> %s", self.name, self.state, new_state)
        self.state = new_state

    def _bind(self, arguments: Union[Mapping, Sequence[str], None]) -> None:
        self.registry.apply_defaults(self.arguments)
        if arguments is not None:
            if isinstance(arguments, Mapping):
                items = list(arguments.items())
            else:
                tokens = [str(token) for token in arguments]
                if tokens and os.path.isfile(tokens[0]):
                    self.executed_file = os.path.realpath(tokens[0])
                    tokens = tokens[1:]
                items = list(parse_cli_arguments(tokens).items())
            for key, value in items:
                self.set_argument(key, value)
        self._transition(STATE_ARGUMENTS_BOUND)

    def _validate(self) -> List[str]:
        errors: List[str] = []
        for key, value in list(self.arguments.items()):
            errors.extend(self.validate_argument(key, value) or [])
        self._transition(STATE_VALIDATED)
        return errors

    def _extract_debug(self) -> None:
        value = self.arguments.get("debug")
        if value is None or isinstance(value, (bool, list)):
            return
        if POSITIVE_INT_RE.match(str(value)):
            self.debug = int(value)
            logger.setLevel(logging.DEBUG)

    def _dispatch(self, errors: List[str]) -> None:
        if "help" in self.arguments:
            self.out.write(self.render_help())
            self._transition(STATE_HELP_REQUESTED)
            return

        if errors:
            self.out.write(format_argument_errors(errors))
            self._transition(STATE_START_FAILURE)
            return

        # must be in place before admit() records this PID
        self._install_signal_handler()
        self.pid_registry = self.create_pid_registry()
        max_processes = parse_positive_int(self.arguments.get("max_processes"))
        slots = self.pid_registry.admit(max_processes)
        if slots is None:
            logger.info(
                "Skipping %s: max_processes=%s reached for category %s.",
                self.name,
                max_processes,
                self.pid_registry.category,
            )
            self._transition(STATE_SKIPPED)
            return

        self._transition(STATE_ADMITTED)
        self._run_body(slots)

    def _run_body(self, slots: int) -> None:
        self._transition(STATE_RUNNING)
        self.start_time = time.time()
        self.log_header(slots)
        try:
            self.run()
        except SystemExit as exc:
            if exc.code not in (None, 0):
                raise
            logger.debug("%s exited early with status %s", self.name, exc.code)
        self._transition(STATE_SUCCEEDED)

    def _fail(self, exc: BaseException) -> None:
        self.failure = Failure.from_exception(exc)
        logger.debug("%s failed: %s", self.name, self.failure.trace)
        self._transition(STATE_FAILED)

    def _finalize(self) -> None:
        if self._finalized:
            return
        self._finalized = True
        self.end_time = time.time()
        try:
            self._restore_signal_handler()
            # a skipped run never recorded its PID
            if self.pid_registry is not None and self.state != STATE_SKIPPED:
                self.pid_registry.release()

            if self.state == STATE_SUCCEEDED:
                self._call_hook(self.report_success)
            elif self.state == STATE_FAILED:
                self.log("UNEXPECTED ERROR ENCOUNTERED!!!")
                self.log(self.failure.describe())
                self._call_hook(self.report_failure, self.failure)
        finally:
            self.exit_code = STATE_EXIT_CODES.get(self.state, EXIT_RUN_FAILURE)
            if self.state in (STATE_SUCCEEDED, STATE_FAILED):
                self._call_hook(self.log_footer)

    def _call_hook(self, hook: Callable[..., Any], *args: Any) -> None:
        try:
            hook(*args)
        except Exception as exc:
            if not self.writer.at_line_start:
                self.log()
            logger.warning("%s: %s() raised %s: %s", self.name, hook.__name__, type(exc).__name__, exc)

    def _install_signal_handler(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        self._previous_sigterm = signal.signal(signal.SIGTERM, self._handle_sigterm)
        self._sigterm_installed = True

    def _restore_signal_handler(self) -> None:
        if not self._sigterm_installed:
            return
        previous = self._previous_sigterm
        signal.signal(signal.SIGTERM, previous if previous is not None else signal.SIG_DFL)
        self._sigterm_installed = False

    def _handle_sigterm(self, signum, frame) -> None:
        raise ScriptTerminated(f"Terminated by signal {signum}.")

    # -- overridable hooks -------------------------------------------------

    def run(self) -> Any:
        return self.runnable.run(self)

    def validate_argument(self, key: Any, value: Any) -> List[str]:
        return self.registry.validate(key, value)

    def create_pid_registry(self) -> PidRegistry:
        return PidRegistry(self.name, compute_category(self.arguments), pid_dir=self.config.get("pid_dir"))

    def report_success(self) -> None:
        pass

    def report_failure(self, failure: Failure) -> None:
        self.log()
        self.log("Notifying concerned parties ... ", False)
        try:
            sent = self.report_error(failure, unrecoverable=True)
        except Exception as exc:
            self.log("FAILED!")
            logger.warning("Failure notification for %s was not sent: %s", self.name, exc)
            return
        if not sent:
            self.log("FAILED!")
            logger.warning("Failure notification for %s was not accepted by the notifier.", self.name)
            return
        self.log("DONE!")

    def log_header(self, slots: int) -> None:
        self.log(f"Starting {self.name} (pid={os.getpid()}, active={slots})")

    def log_footer(self) -> None:
        duration = (self.end_time or time.time()) - (self.start_time or self.end_time or time.time())
        self.log(
            f"Finished {self.name} with success={self.state == STATE_SUCCEEDED} in {duration:.2f}s"
        )

    # -- arguments ---------------------------------------------------------

    def set_argument(self, key: Any, value: Any) -> None:
        self.registry.set_argument(self.arguments, key, value)

    def get_argument(self, name: str, default: Any = None) -> Any:
        return self.arguments.get(name, default)

    def render_help(self) -> str:
        summary = self.config.get("summary") or "(no summary provided)"
        lines = [
            "#",
            "# NAME",
            "#",
            f"#     {self.name}",
            "#",
            "# SUMMARY",
            "#",
            f"#     {summary}",
            "#",
            "# ARGUMENTS",
            "#",
        ]
        for definition in self.registry.definitions():
            if len(definition.name) == 1:
                usage = f"-{definition.name}"
            else:
                usage = f"--{definition.name}"
                if definition.short:
                    usage += f", -{definition.short}"
            lines.append(f"#     {usage}")
            lines.append("#")
            lines.append(f"#         {definition.description or '(no description provided)'}")
            lines.append("#")
        return "\n".join(lines) + "\n"

    # -- output ------------------------------------------------------------

    def log(self, text: Any = "", append_eol: bool = True, timestamp: bool = True) -> None:
        self.writer.write_line(text, append_eol, timestamp)

    def log_indent(self, size: int = 1) -> int:
        return self.writer.indent(size)

    def log_unindent(self) -> int:
        return self.writer.unindent()

    def log_reset_indent(self) -> int:
        return self.writer.reset_indent()

    def prompt(self, message: str, pattern: str = ".*") -> str:
        regex = re.compile(pattern)
        while True:
            self.log(message, False)
            answer = self._input()
            self.writer.reset_line()
            if regex.match(answer):
                return answer

    # -- notification ------------------------------------------------------

    def email(self, content: str, subject: Optional[str] = None, to: Any = None) -> bool:
        if not subject:
            subject = "SCRIPT ALERT"
        digest = hashlib.sha1(content.encode("utf-8")).hexdigest()[:8]
        subject = f"{subject} <{digest}>"

        if not to:
            to = self.arguments.get("email")
        if isinstance(to, (list, tuple)):
            to = ",".join(item for item in to if isinstance(item, str))
        if not to or not isinstance(to, str):
            raise ScriptError("An attempt was made to send an email without a valid recipient.")
        return self.notifier_instance.notify(subject, content, to)

    def report_error(self, error: Any, unrecoverable: bool = False) -> bool:
        if isinstance(error, Failure):
            detail = error.trace or error.describe()
        elif isinstance(error, BaseException):
            detail = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        elif isinstance(error, str):
            detail = error
        else:
            detail = pprint.pformat(error)
        detail = html.escape(detail).replace("\n", "<br />\n")

        host = socket.gethostname()
        script_path = html.escape(self.script_path)
        if unrecoverable:
            subject = f"SCRIPT FAILURE!!! [{host}: {self.script_path}]"
            opening = "An UNRECOVERABLE failure occurred while executing"
            details = "are the details of this failure:"
            closing = "The script terminated unexpectedly as a result of this failure."
        else:
            subject = f"SCRIPT ERROR!!! [{host}: {self.script_path}]"
            opening = "An error occurred while executing"
            details = "are the details of this error:"
            closing = (
                "The script continued after this error and may have "
                "reached a successful completion state."
            )

        content = (
            f"<p>{opening} '{script_path}' on '{html.escape(host)}'.  The following {details}</p>"
            f"<p style='margin-left: 30px'>{detail}</p>"
            f"<p>{closing}</p>"
        )
        return self.email(content, subject)
