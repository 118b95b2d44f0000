"""Messages exchanged between the control tool and the daemon, and their framing.

Each message is a JSON document followed by a single 0xFF byte.
"""

from __future__ import annotations

import enum
import json
import os
from dataclasses import dataclass, field, fields
from typing import Any, BinaryIO, Callable, Union

TERMINATOR = b"\xff"
SOCKET_NAME = "userserversd.sock"
_RUNTIME_DIRS = ("/run", "/var/run", "/tmp")


@dataclass
class Synchronous:
    """A service that is a single long-running process."""

    command: list[str]


@dataclass
class Asynchronous:
    """A service that is started and stopped by two short-lived commands."""

    start_command: list[str]
    stop_command: list[str]


ServiceKind = Union[Synchronous, Asynchronous]


@dataclass
class ServiceSpec:
    """The stored description of a service."""

    working_directory: str
    environment: dict[str, str]
    group: str | None
    kind: ServiceKind


@dataclass
class AddSynchronousService:
    name: str
    working_directory: str
    environment: dict[str, str]
    group: str | None
    command: list[str]


@dataclass
class AddAsynchronousService:
    name: str
    working_directory: str
    environment: dict[str, str]
    group: str | None
    start_command: list[str]
    stop_command: list[str]


@dataclass
class RemoveService:
    name: str


@dataclass
class StartService:
    name: str


@dataclass
class StopService:
    name: str


@dataclass
class RestartService:
    name: str


@dataclass
class GetServiceStatus:
    name: str


@dataclass
class ListServices:
    pass


Command = Union[
    AddSynchronousService,
    AddAsynchronousService,
    RemoveService,
    StartService,
    StopService,
    RestartService,
    GetServiceStatus,
    ListServices,
]


class ResponseStatus(enum.Enum):
    OK = "Ok"
    SERVICE_ALREADY_EXISTS = "ServiceAlreadyExists"
    SERVICE_DOES_NOT_EXIST = "ServiceDoesNotExist"


@dataclass
class ServiceStatus:
    service: ServiceSpec
    running: bool
    logs: str


@dataclass
class ServiceList:
    services: dict[str, ServiceSpec] = field(default_factory=dict)


@dataclass
class Response:
    status: ResponseStatus = ResponseStatus.OK
    kind: ServiceStatus | ServiceList | None = None


# --- field validation -------------------------------------------------------


def _string(value: Any, key: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"field `{key}` must be a string")
    return value


def _optional_string(value: Any, key: str) -> str | None:
    return None if value is None else _string(value, key)


def _string_list(value: Any, key: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"field `{key}` must be a list of strings")
    return list(value)


def _string_map(value: Any, key: str) -> dict[str, str]:
    if not isinstance(value, dict) or not all(isinstance(v, str) for v in value.values()):
        raise ValueError(f"field `{key}` must be a map of strings")
    return dict(value)


_FIELD_CHECKS: dict[str, Callable[[Any, str], Any]] = {
    "name": _string,
    "working_directory": _string,
    "environment": _string_map,
    "group": _optional_string,
    "command": _string_list,
    "start_command": _string_list,
    "stop_command": _string_list,
}


def _build(cls: type, body: Any) -> Any:
    if not isinstance(body, dict):
        raise ValueError(f"`{cls.__name__}` must be a map")
    values = {}
    for f in fields(cls):
        check = _FIELD_CHECKS[f.name]
        if f.name not in body:
            if check is _optional_string:
                values[f.name] = None
                continue
            raise ValueError(f"missing field `{f.name}`")
        values[f.name] = check(body[f.name], f.name)
    return cls(**values)


def _variant(value: Any) -> tuple[str, Any]:
    """Split an externally tagged enum value into its tag and body."""
    if isinstance(value, str):
        return value, None
    if isinstance(value, dict) and len(value) == 1:
        ((tag, body),) = value.items()
        return tag, body
    raise ValueError("expected an enum variant")


def _fields_of(obj: Any) -> dict[str, Any]:
    return {f.name: getattr(obj, f.name) for f in fields(obj)}


# --- services ---------------------------------------------------------------

_KIND_TYPES: dict[str, type] = {"Synchronous": Synchronous, "Asynchronous": Asynchronous}


def _kind_to_json(kind: ServiceKind) -> dict[str, Any]:
    return {type(kind).__name__: _fields_of(kind)}


def _kind_from_json(value: Any) -> ServiceKind:
    tag, body = _variant(value)
    cls = _KIND_TYPES.get(tag)
    if cls is None:
        raise ValueError(f"unknown service kind `{tag}`")
    return _build(cls, body)


def _spec_to_json(spec: ServiceSpec) -> dict[str, Any]:
    return {
        "working_directory": spec.working_directory,
        "environment": spec.environment,
        "group": spec.group,
        "kind": _kind_to_json(spec.kind),
    }


def _spec_from_json(value: Any) -> ServiceSpec:
    if not isinstance(value, dict):
        raise ValueError("service must be a map")
    if "working_directory" not in value:
        raise ValueError("missing field `working_directory`")
    if "environment" not in value:
        raise ValueError("missing field `environment`")
    if "kind" not in value:
        raise ValueError("missing field `kind`")
    return ServiceSpec(
        working_directory=_string(value["working_directory"], "working_directory"),
        environment=_string_map(value["environment"], "environment"),
        group=_optional_string(value.get("group"), "group"),
        kind=_kind_from_json(value["kind"]),
    )


# --- commands ---------------------------------------------------------------

_COMMAND_TYPES: dict[str, type] = {
    cls.__name__: cls
    for cls in (
        AddSynchronousService,
        AddAsynchronousService,
        RemoveService,
        StartService,
        StopService,
        RestartService,
        GetServiceStatus,
        ListServices,
    )
}


def _dumps(value: Any) -> bytes:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def encode_command(command: Command) -> bytes:
    """Serialise a command to JSON bytes, without the frame terminator."""
    tag = type(command).__name__
    if _COMMAND_TYPES.get(tag) is not type(command):
        raise TypeError(f"not a command: {command!r}")
    if isinstance(command, ListServices):
        return _dumps(tag)
    return _dumps({tag: _fields_of(command)})


def decode_command(data: bytes | str) -> Command:
    """Parse a command from JSON; raise ValueError when it is malformed."""
    tag, body = _variant(json.loads(data))
    cls = _COMMAND_TYPES.get(tag)
    if cls is None:
        raise ValueError(f"unknown command `{tag}`")
    if cls is ListServices:
        if body is not None:
            raise ValueError("`ListServices` takes no fields")
        return ListServices()
    return _build(cls, body)


# --- responses --------------------------------------------------------------


def encode_response(response: Response) -> bytes:
    """Serialise a response to JSON bytes, without the frame terminator."""
    kind = response.kind
    if kind is None:
        kind_json: Any = "None"
    elif isinstance(kind, ServiceStatus):
        kind_json = {
            "ServiceStatus": {
                "service": _spec_to_json(kind.service),
                "running": kind.running,
                "logs": kind.logs,
            }
        }
    elif isinstance(kind, ServiceList):
        kind_json = {
            "ServiceList": {
                "services": {name: _spec_to_json(s) for name, s in kind.services.items()}
            }
        }
    else:
        raise TypeError(f"not a response kind: {kind!r}")
    return _dumps({"status": response.status.value, "kind": kind_json})


def decode_response(data: bytes | str) -> Response:
    """Parse a response from JSON; raise ValueError when it is malformed."""
    value = json.loads(data)
    if not isinstance(value, dict):
        raise ValueError("response must be a map")
    if "status" not in value:
        raise ValueError("missing field `status`")
    if "kind" not in value:
        raise ValueError("missing field `kind`")
    status = ResponseStatus(value["status"])

    tag, body = _variant(value["kind"])
    if tag == "None":
        if body is not None:
            raise ValueError("`None` takes no fields")
        return Response(status, None)
    if not isinstance(body, dict):
        raise ValueError(f"`{tag}` must be a map")
    if tag == "ServiceStatus":
        for key in ("service", "running", "logs"):
            if key not in body:
                raise ValueError(f"missing field `{key}`")
        if not isinstance(body["running"], bool):
            raise ValueError("field `running` must be a boolean")
        return Response(
            status,
            ServiceStatus(
                service=_spec_from_json(body["service"]),
                running=body["running"],
                logs=_string(body["logs"], "logs"),
            ),
        )
    if tag == "ServiceList":
        services = body.get("services")
        if not isinstance(services, dict):
            raise ValueError("field `services` must be a map")
        return Response(
            status,
            ServiceList({name: _spec_from_json(s) for name, s in services.items()}),
        )
    raise ValueError(f"unknown response kind `{tag}`")


# --- framing ----------------------------------------------------------------


def _read_frame(stream: BinaryIO) -> bytes | None:
    chunk = bytearray()
    while byte := stream.read(1):
        chunk += byte
        if byte == TERMINATOR:
            break
    if not chunk:
        return None
    # The last byte is the terminator; a frame cut short loses its final byte.
    return bytes(chunk[:-1])


def _write_frame(payload: bytes, stream: BinaryIO) -> None:
    stream.write(payload + TERMINATOR)
    stream.flush()


def read_command(stream: BinaryIO) -> Command | None:
    """Read one command, or return None when the stream is at its end."""
    frame = _read_frame(stream)
    return None if frame is None else decode_command(frame)


def write_command(command: Command, stream: BinaryIO) -> None:
    _write_frame(encode_command(command), stream)


def read_response(stream: BinaryIO) -> Response | None:
    """Read one response, or return None when the stream is at its end."""
    frame = _read_frame(stream)
    return None if frame is None else decode_response(frame)


def write_response(response: Response, stream: BinaryIO) -> None:
    _write_frame(encode_response(response), stream)


def get_socket_path() -> str:
    """Return the path of the daemon's socket, creating its directory if possible."""
    base = next((path for path in _RUNTIME_DIRS if os.path.exists(path)), None)
    if base is None:
        raise FileNotFoundError("no runtime directory found for the socket")

    user_path = f"{base}/user/{os.getuid()}"
    try:
        os.makedirs(user_path, exist_ok=True)
    except OSError:
        return f"{base}/{SOCKET_NAME}"
    return f"{user_path}/{SOCKET_NAME}"