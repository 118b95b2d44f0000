import json
import os
import sys
import time

import pytest

from userservers.ipc import Asynchronous, Synchronous
from userservers.service import (
    Service,
    ServiceAlreadyRunning,
    ServiceError,
    ServiceNotRunning,
)

PY = sys.executable


def wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


def python(code):
    return [PY, "-c", code]


@pytest.fixture
def long_running(tmp_path):
    service = Service(
        str(tmp_path),
        {},
        None,
        Synchronous(python("import time; print('hello', flush=True); time.sleep(60)")),
    )
    yield service
    if service.is_running():
        service.stop()


def test_sync_start_collects_output_and_stop(long_running):
    long_running.start()
    assert long_running.is_running() is True
    assert wait_for(lambda: "hello" in long_running.logs())
    long_running.stop()
    assert wait_for(lambda: not long_running.is_running())


def test_sync_start_twice_raises(long_running):
    long_running.start()
    with pytest.raises(ServiceAlreadyRunning):
        long_running.start()


def test_stop_not_running_raises(long_running):
    with pytest.raises(ServiceNotRunning):
        long_running.stop()


def test_error_messages():
    assert str(ServiceNotRunning()) == "service not running"
    assert str(ServiceAlreadyRunning()) == "service already running"
    assert issubclass(ServiceNotRunning, ServiceError)


def test_sync_restart_runs_again(long_running):
    long_running.start()
    assert wait_for(lambda: "hello" in long_running.logs())
    long_running.restart()
    assert long_running.is_running() is True
    assert wait_for(lambda: long_running.logs().count("hello") == 2)


def test_stderr_and_environment_are_captured(tmp_path):
    service = Service(
        str(tmp_path),
        {"SERVICE_VALUE": "marker-value"},
        None,
        Synchronous(
            python("import os, sys; sys.stderr.write(os.environ['SERVICE_VALUE'])")
        ),
    )
    service.start()
    wait_for(lambda: not service.is_running())
    wait_for(lambda: "marker-value" in service.logs())
    assert "marker-value" in service.logs()
    assert service.is_running() is False


def test_working_directory_is_used(tmp_path):
    service = Service(
        str(tmp_path), {}, None, Synchronous(python("import os; print(os.getcwd())"))
    )
    service.start()
    expected = os.path.realpath(str(tmp_path))
    wait_for(lambda: expected in service.logs())
    assert expected in service.logs()


def test_missing_executable_raises(tmp_path):
    service = Service(
        str(tmp_path), {}, None, Synchronous([str(tmp_path / "does-not-exist")])
    )
    with pytest.raises(ServiceError):
        service.start()
    assert service.is_running() is False


def test_empty_command_raises(tmp_path):
    service = Service(str(tmp_path), {}, None, Synchronous([]))
    with pytest.raises(ServiceError):
        service.start()


def test_async_start_and_stop(tmp_path):
    service = Service(
        str(tmp_path),
        {},
        "web",
        Asynchronous(python("print('up')"), python("print('down')")),
    )
    assert service.is_running() is False
    service.start()
    assert service.is_running() is True
    assert "up" in service.logs()
    with pytest.raises(ServiceAlreadyRunning):
        service.start()
    service.stop()
    assert service.is_running() is False
    assert service.logs().index("up") < service.logs().index("down")
    with pytest.raises(ServiceNotRunning):
        service.stop()


def test_to_json_layout():
    service = Service("/srv", {"A": "1"}, None, Synchronous(["run", "--x"]))
    assert service.to_json() == {
        "working_directory": "/srv",
        "environment": {"A": "1"},
        "group": None,
        "kind": {"Synchronous": {"command": ["run", "--x"]}},
    }


def test_json_round_trip_async():
    service = Service("/srv", {"B": "2"}, "grp", Asynchronous(["up"], ["down"]))
    text = json.dumps(service.to_json())
    restored = Service.from_json(json.loads(text))
    assert restored.working_directory == "/srv"
    assert restored.environment == {"B": "2"}
    assert restored.group == "grp"
    assert restored.kind == Asynchronous(["up"], ["down"])
    assert restored.is_running() is False
    assert restored.to_json() == service.to_json()


@pytest.mark.parametrize("missing", ["working_directory", "environment", "group", "kind"])
def test_from_json_missing_field(missing):
    data = Service("/srv", {}, None, Synchronous(["x"])).to_json()
    del data[missing]
    with pytest.raises(ValueError, match=missing):
        Service.from_json(data)


def test_from_json_unknown_field():
    data = Service("/srv", {}, None, Synchronous(["x"])).to_json()
    data["extra"] = 1
    with pytest.raises(ValueError, match="extra"):
        Service.from_json(data)


@pytest.mark.parametrize(
    "kind",
    [
        {"Other": {"command": ["x"]}},
        {"Synchronous": {}},
        {"Asynchronous": {"start_command": ["x"]}},
        {"Synchronous": {"command": "x"}},
        "Synchronous",
    ],
)
def test_from_json_bad_kind(kind):
    data = {"working_directory": "/", "environment": {}, "group": None, "kind": kind}
    with pytest.raises(ValueError):
        Service.from_json(data)


def test_from_json_bad_types():
    with pytest.raises(ValueError):
        Service.from_json([])
    with pytest.raises(ValueError):
        Service.from_json(
            {
                "working_directory": 3,
                "environment": {},
                "group": None,
                "kind": {"Synchronous": {"command": []}},
            }
        )