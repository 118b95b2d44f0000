import os
import socket
import sys
import tempfile
import threading
import time

import pytest

from userservers.daemon import handle_client, handle_command, serve
from userservers.ipc import (
    AddAsynchronousService,
    Asynchronous,
    GetServiceStatus,
    ListServices,
    RemoveService,
    Response,
    ResponseStatus,
    ServiceList,
    ServiceSpec,
    encode_command,
    read_response,
    write_command,
)
from userservers.service_manager import ServiceManager

UP = [sys.executable, "-c", "print('up')"]
DOWN = [sys.executable, "-c", "print('down')"]


@pytest.fixture
def manager(tmp_path):
    m = ServiceManager(tmp_path / "services.json")
    yield m
    m.stop_all()


def _add(tmp_path, name="svc"):
    return AddAsynchronousService(name, str(tmp_path), {}, None, UP, DOWN)


def test_list_services_on_empty_manager(manager):
    assert handle_command(manager, ListServices()) == Response(
        ResponseStatus.OK, ServiceList({})
    )


def test_unknown_service_status(manager):
    response = handle_command(manager, GetServiceStatus("missing"))
    assert response == Response(ResponseStatus.SERVICE_DOES_NOT_EXIST, None)


def test_add_then_status(manager, tmp_path):
    assert handle_command(manager, _add(tmp_path)) == Response(ResponseStatus.OK, None)
    response = handle_command(manager, GetServiceStatus("svc"))
    assert response.status is ResponseStatus.OK
    assert response.kind.running is True
    assert response.kind.logs == "up\n"
    assert response.kind.service == ServiceSpec(
        str(tmp_path), {}, None, Asynchronous(UP, DOWN)
    )


def test_duplicate_add_is_reported(manager, tmp_path):
    handle_command(manager, _add(tmp_path))
    response = handle_command(manager, _add(tmp_path))
    assert response == Response(ResponseStatus.SERVICE_ALREADY_EXISTS, None)


def test_remove_then_list(manager, tmp_path):
    handle_command(manager, _add(tmp_path))
    assert handle_command(manager, RemoveService("svc")).status is ResponseStatus.OK
    assert handle_command(manager, ListServices()).kind == ServiceList({})


def _run_client(manager):
    server_end, client_end = socket.socketpair()
    thread = threading.Thread(target=handle_client, args=(server_end, manager))
    thread.start()
    return client_end, thread


def test_handle_client_answers_each_command(manager, tmp_path):
    client, thread = _run_client(manager)
    with client, client.makefile("rb") as reader, client.makefile("wb") as writer:
        write_command(_add(tmp_path), writer)
        assert read_response(reader) == Response(ResponseStatus.OK, None)
        write_command(GetServiceStatus("other"), writer)
        assert read_response(reader) == Response(
            ResponseStatus.SERVICE_DOES_NOT_EXIST, None
        )
    thread.join(timeout=10)
    assert not thread.is_alive()
    assert list(manager.list_services().services) == ["svc"]


def test_handle_client_skips_malformed_frames(manager):
    client, thread = _run_client(manager)
    with client, client.makefile("rb") as reader:
        client.sendall(b"garbage\xff" + encode_command(ListServices()) + b"\xff")
        assert read_response(reader) == Response(ResponseStatus.OK, ServiceList({}))
    thread.join(timeout=10)
    assert not thread.is_alive()


def test_serve_accepts_connections(manager):
    with tempfile.TemporaryDirectory() as directory:
        socket_path = os.path.join(directory, "d.sock")
        threading.Thread(target=serve, args=(socket_path, manager), daemon=True).start()
        deadline = time.monotonic() + 10
        while not os.path.exists(socket_path) and time.monotonic() < deadline:
            time.sleep(0.01)

        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
            client.connect(socket_path)
            with client.makefile("rb") as reader, client.makefile("wb") as writer:
                write_command(ListServices(), writer)
                assert read_response(reader) == Response(
                    ResponseStatus.OK, ServiceList({})
                )


def test_serve_fails_when_socket_cannot_be_bound(manager, tmp_path):
    with pytest.raises(OSError):
        serve(str(tmp_path / "missing" / "d.sock"), manager)