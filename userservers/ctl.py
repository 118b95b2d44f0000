"""The control tool: adds, removes, edits and queries services of the daemon."""

from __future__ import annotations

import json
import os
import pwd
import socket
import sys
from typing import Any, BinaryIO, Callable

from . import flag
from .flag import ParseError, ParsedCommand
from .ipc import (
    AddAsynchronousService,
    AddSynchronousService,
    Asynchronous,
    Command,
    GetServiceStatus,
    ListServices,
    RemoveService,
    Response,
    ResponseStatus,
    RestartService,
    ServiceKind,
    ServiceList,
    ServiceSpec,
    ServiceStatus,
    StartService,
    StopService,
    Synchronous,
    get_socket_path,
    read_response,
    write_command,
)

MAX_CELL_CHARS = 40
_NAME_HEADER = "Name"
_START_HEADER = "Start Command"
_STOP_HEADER = "Stop Command"

_WORKING_DIRECTORY_HELP = "Sets the working directory of the service to the provided argument."
_ENVIRONMENT_HELP = (
    "Overrides the environment variables of the service with the ones specified in the "
    "provided argument. The provided argument must be a JSON map."
)
_GROUP_HELP = "Makes the service part of the group specified in the provided argument."
_SERVICE_NAME_HELP = "The name of the service."


class CtlError(Exception):
    """Raised when a control command cannot be carried out."""


class Client:
    """A connection to the daemon's control socket."""

    def __init__(self, socket_path: str | os.PathLike[str] | None = None) -> None:
        if socket_path is None:
            try:
                socket_path = get_socket_path()
            except OSError as err:
                raise CtlError(f"failed to get socket path: {err}") from err

        self._socket = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            self._socket.connect(os.fspath(socket_path))
        except OSError as err:
            self._socket.close()
            raise CtlError(f"failed to connect to socket: {err}") from err
        self._stream: BinaryIO = self._socket.makefile("rwb")

    def __enter__(self) -> Client:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def run(self, command: Command) -> Response:
        """Send a command and return the daemon's successful response."""
        try:
            write_command(command, self._stream)
        except OSError as err:
            raise CtlError(f"failed to send command to server: {err}") from err

        try:
            response = read_response(self._stream)
        except (OSError, ValueError) as err:
            raise CtlError(f"failed to receive response from server: {err}") from err
        if response is None:
            raise CtlError("connection with server unexpectedly closed")

        if response.status is not ResponseStatus.OK:
            raise CtlError(
                "command execution failed with the following status: "
                f"{response.status.value}"
            )
        return response

    def close(self) -> None:
        try:
            self._stream.close()
        finally:
            self._socket.close()


# --- command-line definition ------------------------------------------------


def _add_common_flags(command: flag.Command) -> None:
    command.add_flag("w", "working-directory", _WORKING_DIRECTORY_HELP)
    command.add_flag("e", "environment", _ENVIRONMENT_HELP)
    command.add_flag("g", "group", _GROUP_HELP)


def _named_service_command(name: str, help: str) -> flag.Command:
    command = flag.Command(name, help)
    command.add_positional_arg("service name", _SERVICE_NAME_HELP)
    return command


def build_cli() -> flag.Command:
    """Return the definition of the control tool's command line."""
    root = flag.Command(None, "Add, remove, edit or query userserversd services.")

    add = flag.Command("add", "Adds a new service.")
    add_sync = _named_service_command(
        "sync",
        "Adds a synchronous service with the specified name that runs the specified "
        "command. The command must be a JSON array, with each item being a command "
        "line argument.",
    )
    add_sync.add_positional_arg("command", "The command that the service will run.")
    _add_common_flags(add_sync)

    add_async = _named_service_command(
        "async",
        "Adds an asynchronous service with the specified name that gets started with "
        "the specified start command and stopped with the specified stop command. The "
        "commands must be JSON arrays, with each item being a command line argument.",
    )
    add_async.add_positional_arg("start command", "The command that starts the service.")
    add_async.add_positional_arg("stop command", "The command that stops the service.")
    _add_common_flags(add_async)

    add.add_subcommand(add_sync)
    add.add_subcommand(add_async)

    edit = flag.Command("edit", "Edits the service with the specified name.")
    edit_sync = _named_service_command(
        "sync", "Edits the synchronous service with the specified name."
    )
    edit_sync.add_flag("n", "name", "Changes the name of the service to the specified one.")
    edit_sync.add_flag(
        "c", "command", "Changes the command of the service to the specified one."
    )
    _add_common_flags(edit_sync)

    edit_async = _named_service_command(
        "async", "Edits the asynchronous service with the specified name."
    )
    edit_async.add_flag("n", "name", "Changes the name of the service to the specified one.")
    edit_async.add_flag(
        "st",
        "start-command",
        "Changes the start command of the service to the specified one.",
    )
    edit_async.add_flag(
        "sp",
        "stop-command",
        "Changes the stop command of the service to the specified one.",
    )
    _add_common_flags(edit_async)

    edit.add_subcommand(edit_sync)
    edit.add_subcommand(edit_async)

    root.add_subcommand(add)
    root.add_subcommand(
        _named_service_command("remove", "Removes the service with the specified name.")
    )
    root.add_subcommand(edit)
    root.add_subcommand(
        _named_service_command("start", "Starts the service with the specified name.")
    )
    root.add_subcommand(
        _named_service_command("stop", "Stops the service with the specified name.")
    )
    root.add_subcommand(
        _named_service_command("restart", "Restarts the service with the specified name.")
    )
    root.add_subcommand(
        _named_service_command(
            "status", "Displays the status of the service with the specified name."
        )
    )
    root.add_subcommand(flag.Command("list-services", "List all services."))
    root.add_subcommand(flag.Command("help", "Prints this help."))
    return root


# --- formatting -------------------------------------------------------------


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def _format_list(items: list[str]) -> str:
    return "[" + ", ".join(_quote(item) for item in items) + "]"


def _format_map(mapping: dict[str, str]) -> str:
    return "{" + ", ".join(f"{_quote(k)}: {_quote(v)}" for k, v in mapping.items()) + "}"


def truncate(text: str) -> str:
    """Shorten text to at most 40 characters, marking a cut with a final '|'."""
    if len(text) <= MAX_CELL_CHARS:
        return text
    return text[: MAX_CELL_CHARS - 1] + "|"


def format_status(name: str, status: ServiceStatus) -> str:
    """Return the human-readable status report of one service."""
    service = status.service
    lines = [
        "Service status:",
        "",
        f"                 Name: {name}",
        f"              Running: {'true' if status.running else 'false'}",
        f"    Working directory: {service.working_directory}",
        f"          Environment: {_format_map(service.environment)}",
        f"                Group: {service.group if service.group is not None else 'none'}",
    ]
    if isinstance(service.kind, Synchronous):
        lines.append(f"              Command: {_format_list(service.kind.command)}")
    else:
        lines.append(f"        Start command: {_format_list(service.kind.start_command)}")
        lines.append(f"         Stop command: {_format_list(service.kind.stop_command)}")
    lines += [
        "",
        "--- Beginning of Logs ---",
        status.logs,
        "---    End of Logs    ---",
        "",
    ]
    return "\n".join(lines) + "\n"


def _command_cells(kind: ServiceKind) -> tuple[str, str | None]:
    if isinstance(kind, Synchronous):
        return truncate(_format_list(kind.command)), None
    return (
        truncate(_format_list(kind.start_command)),
        truncate(_format_list(kind.stop_command)),
    )


def format_service_list(services: dict[str, ServiceSpec]) -> str:
    """Return a table of services, one section per group."""
    groups: dict[str, list[tuple[str, str, str | None]]] = {}
    for name, spec in sorted(services.items()):
        group = spec.group if spec.group is not None else "none"
        groups.setdefault(group, []).append((truncate(name), *_command_cells(spec.kind)))

    rows = [row for group_rows in groups.values() for row in group_rows]
    name_width = max([len(_NAME_HEADER)] + [len(name) for name, _, _ in rows])
    start_width = max([len(_START_HEADER)] + [len(start) for _, start, _ in rows])
    stop_width = max(
        [len(_STOP_HEADER)] + [len(stop) for _, _, stop in rows if stop is not None]
    )

    lines: list[str] = []
    for group in sorted(groups):
        lines.append(f"{group}:")
        lines.append(
            f"    {_NAME_HEADER.ljust(name_width)}  "
            f"{_START_HEADER.ljust(start_width)}  "
            f"{_STOP_HEADER.ljust(stop_width)}"
        )
        lines.append("    " + "-" * (name_width + start_width + stop_width + 4))
        for name, start, stop in groups[group]:
            row = f"    {name.ljust(name_width)}  {start.ljust(start_width)}  "
            if stop is not None:
                row += stop.ljust(stop_width)
            lines.append(row)
        lines.append("")
    return "\n".join(lines) + "\n" if lines else ""


# --- subcommands ------------------------------------------------------------


def _from_json(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError as err:
        raise CtlError(
            f"invalid json was provided via the command line arguments: {err}"
        ) from err


def _json_list(text: str) -> list[str]:
    value = _from_json(text)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise CtlError(
            "invalid json was provided via the command line arguments: "
            "expected an array of strings"
        )
    return value


def _json_map(text: str) -> dict[str, str]:
    value = _from_json(text)
    if not isinstance(value, dict) or not all(isinstance(v, str) for v in value.values()):
        raise CtlError(
            "invalid json was provided via the command line arguments: "
            "expected a map of strings"
        )
    return value


def _home_directory() -> str:
    home = os.environ.get("HOME")
    if home is not None:
        return home
    try:
        user = pwd.getpwuid(os.getuid())
    except KeyError:
        raise CtlError("failed to get home directory path") from None
    home = f"/home/{user.pw_name}"
    if not os.path.exists(home):
        raise CtlError("failed to get home directory path")
    return home


def _service_status(client: Client, name: str) -> ServiceStatus:
    kind = client.run(GetServiceStatus(name=name)).kind
    if not isinstance(kind, ServiceStatus):
        raise CtlError("got unexpected response from server")
    return kind


def _add(parsed: ParsedCommand) -> None:
    sub = parsed.subcommand
    assert sub is not None
    working_directory = sub.flags.get("working-directory")
    if working_directory is None:
        working_directory = _home_directory()
    environment_json = sub.flags.get("environment")
    environment = {} if environment_json is None else _json_map(environment_json)
    group = sub.flags.get("group")
    name = sub.positional_args["service name"]

    command: Command
    if sub.name == "sync":
        command = AddSynchronousService(
            name=name,
            working_directory=working_directory,
            environment=environment,
            group=group,
            command=_json_list(sub.positional_args["command"]),
        )
    else:
        command = AddAsynchronousService(
            name=name,
            working_directory=working_directory,
            environment=environment,
            group=group,
            start_command=_json_list(sub.positional_args["start command"]),
            stop_command=_json_list(sub.positional_args["stop command"]),
        )

    with Client() as client:
        client.run(command)


def _edit(parsed: ParsedCommand) -> None:
    sub = parsed.subcommand
    assert sub is not None
    name = sub.positional_args["service name"]

    with Client() as client:
        service = _service_status(client, name).service

        new_name = sub.flags.get("name", name)
        working_directory = sub.flags.get("working-directory", service.working_directory)
        environment_json = sub.flags.get("environment")
        environment = (
            service.environment if environment_json is None else _json_map(environment_json)
        )
        group = sub.flags.get("group", service.group)

        readd: Command
        if sub.name == "sync":
            if not isinstance(service.kind, Synchronous):
                raise CtlError("service is not synchronous")
            command_json = sub.flags.get("command")
            readd = AddSynchronousService(
                name=new_name,
                working_directory=working_directory,
                environment=environment,
                group=group,
                command=(
                    service.kind.command if command_json is None else _json_list(command_json)
                ),
            )
        else:
            if not isinstance(service.kind, Asynchronous):
                raise CtlError("service is not asynchronous")
            start_json = sub.flags.get("start-command")
            stop_json = sub.flags.get("stop-command")
            readd = AddAsynchronousService(
                name=new_name,
                working_directory=working_directory,
                environment=environment,
                group=group,
                start_command=(
                    service.kind.start_command
                    if start_json is None
                    else _json_list(start_json)
                ),
                stop_command=(
                    service.kind.stop_command if stop_json is None else _json_list(stop_json)
                ),
            )

        client.run(RemoveService(name=name))
        client.run(readd)


def _simple(factory: Callable[[str], Command]) -> Callable[[ParsedCommand], None]:
    def handler(parsed: ParsedCommand) -> None:
        with Client() as client:
            client.run(factory(parsed.positional_args["service name"]))

    return handler


def _status(parsed: ParsedCommand) -> None:
    name = parsed.positional_args["service name"]
    with Client() as client:
        status = _service_status(client, name)
    print(format_status(name, status), end="")


def _list_services(parsed: ParsedCommand) -> None:
    with Client() as client:
        kind = client.run(ListServices()).kind
    if not isinstance(kind, ServiceList):
        raise CtlError("got unexpected response from server")
    print(format_service_list(kind.services), end="")


_HANDLERS: dict[str, Callable[[ParsedCommand], None]] = {
    "add": _add,
    "remove": _simple(lambda name: RemoveService(name=name)),
    "edit": _edit,
    "start": _simple(lambda name: StartService(name=name)),
    "stop": _simple(lambda name: StopService(name=name)),
    "restart": _simple(lambda name: RestartService(name=name)),
    "status": _status,
    "list-services": _list_services,
}


def main(argv: list[str] | None = None) -> int:
    """Run the control tool with the arguments that follow the program name."""
    program = os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else "userserversctl"
    args = sys.argv[1:] if argv is None else list(argv)

    cli = build_cli()
    try:
        parsed = flag.parse(cli, [program, *args])
    except ParseError as err:
        print(cli.generate_help(program), file=sys.stderr)
        print(f"ERROR: {err}", file=sys.stderr)
        return 1

    sub = parsed.subcommand
    assert sub is not None
    if sub.name == "help":
        print(cli.generate_help(program), end="")
        return 0

    try:
        _HANDLERS[sub.name](sub)
    except CtlError as err:
        print(f"ERROR: {err}", file=sys.stderr)
        return 1

    print("Command executed successfully!")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())