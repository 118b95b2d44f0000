"""The daemon: serves control commands on a Unix socket until signalled."""

from __future__ import annotations

import os
import queue
import signal
import socket
import sys
import threading

from .ipc import (
    AddAsynchronousService,
    AddSynchronousService,
    Command,
    GetServiceStatus,
    ListServices,
    RemoveService,
    Response,
    ResponseStatus,
    RestartService,
    StartService,
    StopService,
    get_socket_path,
    read_command,
    write_response,
)
from .service_manager import CommandFailed, ServiceManager


def handle_command(manager: ServiceManager, command: Command) -> Response:
    """Carry out one command and return the response to send back."""
    print(f"Received command: {command!r}")
    try:
        match command:
            case AddSynchronousService():
                kind = manager.add_synchronous(
                    command.name,
                    command.working_directory,
                    command.environment,
                    command.group,
                    command.command,
                )
            case AddAsynchronousService():
                kind = manager.add_asynchronous(
                    command.name,
                    command.working_directory,
                    command.environment,
                    command.group,
                    command.start_command,
                    command.stop_command,
                )
            case RemoveService():
                kind = manager.remove(command.name)
            case StartService():
                kind = manager.start(command.name)
            case StopService():
                kind = manager.stop(command.name)
            case RestartService():
                kind = manager.restart(command.name)
            case GetServiceStatus():
                kind = manager.get_status(command.name)
            case ListServices():
                kind = manager.list_services()
            case _:
                raise TypeError(f"not a command: {command!r}")
    except CommandFailed as err:
        print(f"Command execution failed with the following status: {err.status.value}")
        return Response(err.status, None)
    return Response(ResponseStatus.OK, kind)


def handle_client(connection: socket.socket, manager: ServiceManager) -> None:
    """Answer commands from one connection until the peer closes it."""
    with connection, connection.makefile("rwb") as stream:
        while True:
            try:
                command = read_command(stream)
            except ValueError:
                continue
            except OSError:
                break
            if command is None:
                break

            response = handle_command(manager, command)
            try:
                write_response(response, stream)
            except OSError as err:
                print(f"Failed to send response to client: {err}")


def serve(socket_path: str, manager: ServiceManager) -> None:
    """Listen on ``socket_path`` forever, one thread per client."""
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as listener:
        listener.bind(socket_path)
        listener.listen()
        print(f"Listening for commands on socket `{socket_path}`")
        while True:
            connection, _ = listener.accept()
            threading.Thread(
                target=handle_client, args=(connection, manager), daemon=True
            ).start()


def main(argv: list[str] | None = None) -> int:
    manager = ServiceManager()
    exit_codes: queue.Queue[int] = queue.Queue()

    try:
        socket_path = get_socket_path()
    except OSError as err:
        print(f"ERROR: failed to get socket path: {err}", file=sys.stderr)
        return 1

    def run_server() -> None:
        try:
            serve(socket_path, manager)
        except OSError as err:
            print(f"ERROR: server failed: {err}", file=sys.stderr)
            exit_codes.put(1)

    threading.Thread(target=run_server, daemon=True).start()

    def on_signal(signum: int, frame: object) -> None:
        exit_codes.put_nowait(0)

    try:
        for signum in (signal.SIGINT, signal.SIGTERM):
            signal.signal(signum, on_signal)
    except (OSError, ValueError) as err:
        print(f"ERROR: failed to set up signal handlers: {err}", file=sys.stderr)
        return 1

    while True:
        try:
            exit_code = exit_codes.get(timeout=0.5)
        except queue.Empty:
            continue
        break

    manager.stop_all()
    if exit_code == 0:
        try:
            os.remove(socket_path)
        except OSError as err:
            print(f"ERROR: failed to remove socket file: {err}", file=sys.stderr)
            return 1
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())