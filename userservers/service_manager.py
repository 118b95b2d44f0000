"""The daemon's registry of services, persisted to a JSON configuration file."""

from __future__ import annotations

import functools
import json
import os
import pwd
import threading
from typing import Any, Callable, TypeVar

from .ipc import (
    Asynchronous,
    ResponseStatus,
    ServiceKind,
    ServiceList,
    ServiceSpec,
    ServiceStatus,
    Synchronous,
)
from .service import Service, ServiceError

CONFIG_FILE_NAME = "userserversd_services.json"

_T = TypeVar("_T", bound=Callable[..., Any])


class CommandFailed(Exception):
    """Raised when a command cannot be carried out; carries the response status."""

    def __init__(self, status: ResponseStatus) -> None:
        super().__init__(status.value)
        self.status = status


def _home_directory() -> str | None:
    home = os.environ.get("HOME")
    if home is not None:
        return home
    try:
        user = pwd.getpwuid(os.getuid())
    except KeyError:
        return None
    home = f"/home/{user.pw_name}"
    return home if os.path.exists(home) else None


def get_config_file_path() -> str | None:
    """Return where the service list is stored, or None if no home can be found."""
    config_dir = os.environ.get("XDG_CONFIG_HOME")
    if config_dir is not None:
        return f"{config_dir}/{CONFIG_FILE_NAME}"

    home = _home_directory()
    if home is None:
        return None

    dotfile = f"{home}/.{CONFIG_FILE_NAME}"
    if os.path.exists(dotfile) or not os.path.exists(f"{home}/.config"):
        return dotfile
    return f"{home}/.config/{CONFIG_FILE_NAME}"


def _copy_kind(kind: ServiceKind) -> ServiceKind:
    if isinstance(kind, Synchronous):
        return Synchronous(command=list(kind.command))
    return Asynchronous(
        start_command=list(kind.start_command), stop_command=list(kind.stop_command)
    )


def _spec(service: Service) -> ServiceSpec:
    return ServiceSpec(
        working_directory=service.working_directory,
        environment=dict(service.environment),
        group=service.group,
        kind=_copy_kind(service.kind),
    )


def _locked(method: _T) -> _T:
    @functools.wraps(method)
    def wrapper(self: ServiceManager, *args: Any, **kwargs: Any) -> Any:
        with self._lock:
            return method(self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]


class ServiceManager:
    """Holds all services, starts them on load and saves changes to disk.

    Every public method is safe to call from several threads.
    """

    def __init__(self, config_path: str | os.PathLike[str] | None = None) -> None:
        self._explicit_path = None if config_path is None else os.fspath(config_path)
        self._services: dict[str, Service] = {}
        self._lock = threading.RLock()
        self._load()

    def _config_path(self) -> str | None:
        if self._explicit_path is not None:
            return self._explicit_path
        return get_config_file_path()

    def _load(self) -> None:
        path = self._config_path()
        if path is None:
            print("Failed to get path for configuration file. Service list will NOT be loaded!")
            return

        try:
            with open(path, encoding="utf-8") as config_file:
                contents = config_file.read()
        except FileNotFoundError:
            return
        except (OSError, UnicodeDecodeError) as err:
            print(
                f"Failed to read configuration file for the following reason: {err}. "
                "Service list will NOT be loaded!"
            )
            return

        try:
            data = json.loads(contents)
            if not isinstance(data, dict):
                raise ValueError("invalid type: expected a map of services")
            self._services = {name: Service.from_json(value) for name, value in data.items()}
        except ValueError as err:
            print(
                f"Failed to deserialize configuration file for the following reason: {err}. "
                "Service list will NOT be loaded!"
            )

        print("Starting services...")
        for name, service in self._services.items():
            print(f"Starting service `{name}`")
            self._try_start(name, service)

    def _flush(self) -> None:
        path = self._config_path()
        if path is None:
            print("Failed to get path for configuration file. Service list will NOT be saved!")
            return

        try:
            config_file = open(path, "w", encoding="utf-8")
        except OSError as err:
            print(f"Failed to create configuration file: {err}")
            return

        with config_file:
            data = {name: service.to_json() for name, service in self._services.items()}
            try:
                config_file.write(json.dumps(data, separators=(",", ":"), ensure_ascii=False))
            except OSError as err:
                print(
                    f"Failed to write configuration file for the following reason: {err}. "
                    "Service list will NOT be saved!"
                )

    def _get(self, name: str) -> Service:
        try:
            return self._services[name]
        except KeyError:
            raise CommandFailed(ResponseStatus.SERVICE_DOES_NOT_EXIST) from None

    @staticmethod
    def _try_start(name: str, service: Service) -> None:
        try:
            service.start()
        except ServiceError as err:
            print(f"Failed to start service `{name}`: {err}")

    def _add(self, name: str, service: Service) -> None:
        print(f"Adding service `{name}`")
        if name in self._services:
            raise CommandFailed(ResponseStatus.SERVICE_ALREADY_EXISTS)
        self._services[name] = service

        print(f"Starting service `{name}`")
        self._try_start(name, service)
        self._flush()

    @_locked
    def add_synchronous(
        self,
        name: str,
        working_directory: str,
        environment: dict[str, str],
        group: str | None,
        command: list[str],
    ) -> None:
        """Register and start a service that is a single long-running process."""
        self._add(
            name,
            Service(working_directory, environment, group, Synchronous(command=list(command))),
        )

    @_locked
    def add_asynchronous(
        self,
        name: str,
        working_directory: str,
        environment: dict[str, str],
        group: str | None,
        start_command: list[str],
        stop_command: list[str],
    ) -> None:
        """Register and start a service driven by separate start and stop commands."""
        kind = Asynchronous(start_command=list(start_command), stop_command=list(stop_command))
        self._add(name, Service(working_directory, environment, group, kind))

    @_locked
    def remove(self, name: str) -> None:
        """Stop the service if it is running and forget it."""
        print(f"Removing service `{name}`")
        service = self._get(name)

        print(f"Stopping service `{name}`")
        if service.is_running():
            try:
                service.stop()
            except ServiceError as err:
                print(f"Failed to stop service `{name}`: {err}")

        del self._services[name]
        print("Service removed")
        self._flush()

    @_locked
    def start(self, name: str) -> None:
        service = self._get(name)
        print(f"Starting service `{name}`")
        self._try_start(name, service)

    @_locked
    def stop(self, name: str) -> None:
        service = self._get(name)
        print(f"Stopping service `{name}`")
        try:
            service.stop()
        except ServiceError as err:
            print(f"Failed to stop service `{name}`: {err}")

    @_locked
    def restart(self, name: str) -> None:
        service = self._get(name)
        print(f"Restarting service `{name}`")
        try:
            service.restart()
        except ServiceError as err:
            print(f"Failed to restart service `{name}`: {err}")

    @_locked
    def stop_all(self) -> None:
        """Stop every running service."""
        print("Stopping services...")
        for name, service in self._services.items():
            print(f"Stopping service `{name}`")
            if service.is_running():
                try:
                    service.stop()
                except ServiceError as err:
                    print(f"Failed to stop service `{name}`: {err}")

    @_locked
    def get_status(self, name: str) -> ServiceStatus:
        service = self._get(name)
        return ServiceStatus(
            service=_spec(service), running=service.is_running(), logs=service.logs()
        )

    @_locked
    def list_services(self) -> ServiceList:
        return ServiceList({name: _spec(service) for name, service in self._services.items()})