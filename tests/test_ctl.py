import os
import shutil
import tempfile
import threading
import time

import pytest

from userservers import flag
from userservers.ctl import (
    Client,
    CtlError,
    build_cli,
    format_service_list,
    format_status,
    main,
    truncate,
)
from userservers.daemon import serve
from userservers.ipc import (
    AddAsynchronousService,
    Asynchronous,
    GetServiceStatus,
    ListServices,
    ResponseStatus,
    ServiceList,
    ServiceSpec,
    ServiceStatus,
    StartService,
    Synchronous,
)
from userservers.service_manager import ServiceManager


@pytest.fixture
def socket_path(tmp_path):
    directory = tempfile.mkdtemp(prefix="u")
    path = os.path.join(directory, "s.sock")
    manager = ServiceManager(config_path=tmp_path / "services.json")
    threading.Thread(target=serve, args=(path, manager), daemon=True).start()
    deadline = time.monotonic() + 5
    while not os.path.exists(path) and time.monotonic() < deadline:
        time.sleep(0.01)
    yield path
    manager.stop_all()
    shutil.rmtree(directory, ignore_errors=True)


def test_client_lists_no_services(socket_path):
    with Client(socket_path) as client:
        response = client.run(ListServices())
    assert response.status is ResponseStatus.OK
    assert response.kind == ServiceList({})


def test_client_add_then_status(socket_path, tmp_path):
    with Client(socket_path) as client:
        client.run(
            AddAsynchronousService(
                name="web",
                working_directory=str(tmp_path),
                environment={"K": "V"},
                group="g1",
                start_command=["true"],
                stop_command=["true"],
            )
        )
        kind = client.run(GetServiceStatus(name="web")).kind
    assert isinstance(kind, ServiceStatus)
    assert kind.running is True
    assert kind.service.working_directory == str(tmp_path)
    assert kind.service.group == "g1"
    assert kind.service.kind == Asynchronous(["true"], ["true"])


def test_client_unknown_service_raises(socket_path):
    with Client(socket_path) as client:
        with pytest.raises(CtlError, match="ServiceDoesNotExist"):
            client.run(StartService(name="missing"))


def test_client_connect_failure(tmp_path):
    with pytest.raises(CtlError, match="failed to connect to socket"):
        Client(tmp_path / "absent.sock")


def test_truncate_keeps_short_text():
    assert truncate("abc") == "abc"
    assert truncate("x" * 40) == "x" * 40


def test_truncate_marks_cut():
    text = "abcdefghij" * 5
    result = truncate(text)
    assert len(result) == 40
    assert result.endswith("|")
    assert result[:-1] == text[:39]


def test_format_status_sync():
    status = ServiceStatus(
        service=ServiceSpec("/srv", {"K": "V"}, None, Synchronous(["sleep", "5"])),
        running=True,
        logs="hello",
    )
    lines = format_status("web", status).splitlines()
    assert lines[0] == "Service status:"
    assert "                 Name: web" in lines
    assert "              Running: true" in lines
    assert "    Working directory: /srv" in lines
    assert '          Environment: {"K": "V"}' in lines
    assert "                Group: none" in lines
    assert '              Command: ["sleep", "5"]' in lines
    start = lines.index("--- Beginning of Logs ---")
    assert lines[start + 1] == "hello"
    assert lines[start + 2] == "---    End of Logs    ---"


def test_format_status_async():
    status = ServiceStatus(
        service=ServiceSpec("/srv", {}, "g", Asynchronous(["up"], ["down"])),
        running=False,
        logs="",
    )
    lines = format_status("db", status).splitlines()
    assert "              Running: false" in lines
    assert "                Group: g" in lines
    assert '        Start command: ["up"]' in lines
    assert '         Stop command: ["down"]' in lines


def test_format_service_list_groups_and_alignment():
    services = {
        "web": ServiceSpec("/", {}, None, Synchronous(["a"])),
        "db": ServiceSpec("/", {}, "g1", Asynchronous(["up"], ["down"])),
        "cache": ServiceSpec("/", {}, "g1", Synchronous(["c" * 60])),
    }
    lines = format_service_list(services).splitlines()
    assert "none:" in lines
    assert "g1:" in lines
    headers = [line for line in lines if line.startswith("    Name")]
    assert len(headers) == 2
    assert all("Start Command" in h and "Stop Command" in h for h in headers)
    rows = [line for line in lines if line.startswith("    ") and not line.startswith("    Name")]
    rows = [r for r in rows if not r.strip().startswith("-")]
    assert any(r.startswith("    web ") for r in rows)
    cache_row = next(r for r in rows if r.startswith("    cache"))
    assert "|" in cache_row
    start_col = headers[0].index("Start Command")
    assert all(r[start_col - 2 : start_col] == "  " for r in rows)


def test_format_service_list_empty():
    assert format_service_list({}) == ""


def test_build_cli_parses_add_sync():
    parsed = flag.parse(build_cli(), ["ctl", "add", "sync", "web", '["a"]', "-g", "g1"])
    assert parsed.subcommand.name == "add"
    sync = parsed.subcommand.subcommand
    assert sync.name == "sync"
    assert sync.positional_args == {"service name": "web", "command": '["a"]'}
    assert sync.flags == {"group": "g1"}


def test_build_cli_edit_async_flags():
    parsed = flag.parse(build_cli(), ["ctl", "edit", "async", "db", "-st", '["x"]'])
    edit = parsed.subcommand.subcommand
    assert edit.flags == {"start-command": '["x"]'}


def test_main_help(capsys):
    assert main(["help"]) == 0
    out = capsys.readouterr().out
    assert out.startswith("USAGE:")
    assert "list-services" in out


def test_main_without_subcommand(capsys):
    assert main([]) == 1
    assert "ERROR: no subcommand was provided" in capsys.readouterr().err


def test_main_invalid_json(capsys, monkeypatch, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path))
    assert main(["add", "sync", "web", "not json"]) == 1
    assert "invalid json was provided" in capsys.readouterr().err


def test_main_json_of_wrong_shape(capsys, monkeypatch, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path))
    assert main(["add", "sync", "web", '{"a": "b"}']) == 1
    assert "expected an array of strings" in capsys.readouterr().err