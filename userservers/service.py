"""Services: supervised processes whose output is collected into a log."""

from __future__ import annotations

import codecs
import os
import signal
import subprocess
import threading
from typing import Any, BinaryIO, Callable

from .ipc import Asynchronous, ServiceKind, Synchronous

_STOP_ATTEMPTS = 5
_STOP_TIMEOUT = 30.0
_READ_SIZE = 4096
_FIELDS = ("working_directory", "environment", "group", "kind")


class ServiceError(Exception):
    """Raised when a service cannot be started or stopped."""


class ServiceNotRunning(ServiceError):
    def __init__(self) -> None:
        super().__init__("service not running")


class ServiceAlreadyRunning(ServiceError):
    def __init__(self) -> None:
        super().__init__("service already running")


class _Process:
    """A child process whose stdout and stderr are fed into a sink."""

    def __init__(
        self,
        argv: list[str],
        cwd: str,
        environment: dict[str, str],
        sink: Callable[[str], None],
    ) -> None:
        if not argv:
            raise ServiceError("the command is empty")
        env = dict(os.environ)
        env.update(environment)
        try:
            self._popen = subprocess.Popen(
                argv,
                cwd=cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except (OSError, ValueError) as err:
            raise ServiceError(str(err)) from err

        self._readers = [
            threading.Thread(target=self._pump, args=(stream, sink), daemon=True)
            for stream in (self._popen.stdout, self._popen.stderr)
        ]
        for reader in self._readers:
            reader.start()

    @staticmethod
    def _pump(stream: BinaryIO, sink: Callable[[str], None]) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        with stream:
            while chunk := stream.read1(_READ_SIZE):  # type: ignore[attr-defined]
                text = decoder.decode(chunk)
                if text:
                    sink(text)
        tail = decoder.decode(b"", final=True)
        if tail:
            sink(tail)

    def wait(self) -> int:
        """Wait for the process to exit and for its output to be collected."""
        returncode = self._popen.wait()
        for reader in self._readers:
            reader.join()
        return returncode

    def is_running(self) -> bool:
        return self._popen.poll() is None

    def stop(self) -> None:
        """Ask the process to terminate, killing it if it does not comply."""
        try:
            for _ in range(_STOP_ATTEMPTS):
                self._popen.send_signal(signal.SIGTERM)
                try:
                    self._popen.wait(timeout=_STOP_TIMEOUT)
                    break
                except subprocess.TimeoutExpired:
                    continue
            self._popen.kill()
            self._popen.wait()
        except OSError as err:
            raise ServiceError(str(err)) from err


class Service:
    """A configured service together with its runtime state and logs."""

    def __init__(
        self,
        working_directory: str,
        environment: dict[str, str],
        group: str | None,
        kind: ServiceKind,
    ) -> None:
        self.working_directory = working_directory
        self.environment = environment
        self.group = group
        self.kind = kind

        self._async_running = False
        self._child: _Process | None = None
        self._logs: list[str] = []
        self._logs_lock = threading.Lock()

    def _append_log(self, text: str) -> None:
        with self._logs_lock:
            self._logs.append(text)

    def _spawn(self, argv: list[str]) -> _Process:
        return _Process(
            list(argv), self.working_directory, dict(self.environment), self._append_log
        )

    def _run_to_completion(self, argv: list[str]) -> None:
        try:
            self._spawn(argv).wait()
        except OSError as err:
            raise ServiceError(str(err)) from err

    def start(self) -> None:
        """Start the service; raise ServiceAlreadyRunning if it is running."""
        if self.is_running():
            raise ServiceAlreadyRunning()
        if isinstance(self.kind, Synchronous):
            self._child = self._spawn(self.kind.command)
        else:
            self._run_to_completion(self.kind.start_command)
            self._async_running = True

    def stop(self) -> None:
        """Stop the service; raise ServiceNotRunning if it is not running."""
        if not self.is_running():
            raise ServiceNotRunning()
        if isinstance(self.kind, Synchronous):
            assert self._child is not None
            self._child.stop()
        else:
            self._run_to_completion(self.kind.stop_command)
            self._async_running = False

    def restart(self) -> None:
        self.stop()
        self.start()

    def is_running(self) -> bool:
        if isinstance(self.kind, Synchronous):
            return self._child is not None and self._child.is_running()
        return self._async_running

    def logs(self) -> str:
        """Return everything the service's commands have written so far."""
        with self._logs_lock:
            return "".join(self._logs)

    def to_json(self) -> dict[str, Any]:
        """Return the stored configuration as a JSON-compatible mapping."""
        if isinstance(self.kind, Synchronous):
            kind: dict[str, Any] = {"Synchronous": {"command": list(self.kind.command)}}
        else:
            kind = {
                "Asynchronous": {
                    "start_command": list(self.kind.start_command),
                    "stop_command": list(self.kind.stop_command),
                }
            }
        return {
            "working_directory": self.working_directory,
            "environment": dict(self.environment),
            "group": self.group,
            "kind": kind,
        }

    @classmethod
    def from_json(cls, data: Any) -> Service:
        """Build a service from a mapping made by to_json; raise ValueError if invalid."""
        if not isinstance(data, dict):
            raise ValueError("invalid type: expected struct Service")
        for key in data:
            if key not in _FIELDS:
                expected = ", ".join(f"`{name}`" for name in _FIELDS)
                raise ValueError(f"unknown field `{key}`, expected one of {expected}")
        for key in _FIELDS:
            if key not in data:
                raise ValueError(f"missing field `{key}`")

        working_directory = data["working_directory"]
        if not isinstance(working_directory, str):
            raise ValueError("field `working_directory` must be a string")
        environment = data["environment"]
        if not isinstance(environment, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in environment.items()
        ):
            raise ValueError("field `environment` must be a map of strings")
        group = data["group"]
        if group is not None and not isinstance(group, str):
            raise ValueError("field `group` must be a string or null")

        return cls(working_directory, dict(environment), group, _kind_from_json(data["kind"]))


def _string_list(body: dict[str, Any], key: str) -> list[str]:
    if key not in body:
        raise ValueError(f"missing field `{key}`")
    value = body[key]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"field `{key}` must be a list of strings")
    return list(value)


def _kind_from_json(value: Any) -> ServiceKind:
    if not isinstance(value, dict) or len(value) != 1:
        raise ValueError("field `kind` must be a single service kind")
    ((tag, body),) = value.items()
    if not isinstance(body, dict):
        raise ValueError(f"`{tag}` must be a map")
    if tag == "Synchronous":
        return Synchronous(command=_string_list(body, "command"))
    if tag == "Asynchronous":
        return Asynchronous(
            start_command=_string_list(body, "start_command"),
            stop_command=_string_list(body, "stop_command"),
        )
    raise ValueError(f"unknown service kind `{tag}`")