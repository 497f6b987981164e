import time

import pytest
from fastapi.testclient import TestClient

from conftest import LocalRuntime
from runbox.api import create_app


def _until(ws, kind):
    events = []
    while True:
        event = ws.receive_json()
        events.append(event)
        if event["type"] == kind:
            return events


def _eventually(check, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if check():
            return True
        time.sleep(0.02)
    return check()


@pytest.fixture
def client(settings):
    app = create_app(settings, runtime=LocalRuntime())
    with TestClient(app) as c:
        yield c


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_lifecycle(client, settings):
    with client.websocket_connect("/") as ws:
        hello = ws.receive_json()
        assert hello["type"] == "connected"
        sid = hello["sessionId"]

        ws.send_json({"type": "run", "language": "python", "code": 'print("hi")'})
        events = _until(ws, "terminated")

    types = [e["type"] for e in events]
    assert types[0] == "output"
    assert types.index("started") < types.index("terminated")
    out = "".join(e["data"] for e in events[types.index("started"):] if e["type"] == "output")
    assert out == "hi\n"
    assert events[-1] == {"type": "terminated", "exitCode": 0}

    # the session and its workspace go away once the socket closes
    registry = client.app.state.registry
    assert _eventually(lambda: sid not in registry)
    assert _eventually(lambda: not (settings.temp_dir / sid).exists())

    runs = client.get(f"/sessions/{sid}/runs").json()
    assert [(r["status"], r["exit_code"]) for r in runs] == [("FINISHED", 0)]


def test_interactive_input(client):
    with client.websocket_connect("/") as ws:
        ws.receive_json()
        ws.send_json({"type": "run", "language": "python", "code": "print('hello ' + input())"})
        _until(ws, "started")
        ws.send_json({"type": "input", "input": "ada"})
        events = _until(ws, "terminated")

    assert {"type": "inputProcessed", "success": True} in events
    assert "".join(e["data"] for e in events if e["type"] == "output") == "hello ada\n"
    assert events[-1]["exitCode"] == 0


def test_protocol_errors_keep_connection(client):
    with client.websocket_connect("/") as ws:
        ws.receive_json()
        ws.send_text("{oops")
        assert ws.receive_json()["type"] == "error"
        ws.send_json({"type": "input", "input": "early"})
        assert ws.receive_json() == {
            "type": "error", "message": "No active code execution. Please run your code first."
        }
        ws.send_json({"type": "stop"})
        assert ws.receive_json() == {"type": "stopped", "message": "No active execution to stop."}


def test_disconnect_mid_run_reclaims_session(client, settings):
    with client.websocket_connect("/") as ws:
        sid = ws.receive_json()["sessionId"]
        ws.send_json({"type": "run", "language": "python", "code": "import time\ntime.sleep(60)\n"})
        _until(ws, "started")
        assert (settings.temp_dir / sid).exists()

    registry = client.app.state.registry
    assert _eventually(lambda: sid not in registry)
    assert _eventually(lambda: not (settings.temp_dir / sid).exists())
    assert _eventually(lambda: client.get(f"/sessions/{sid}/runs").json()[0]["status"] == "KILLED")
    assert client.get(f"/sessions/{sid}/runs").json()[0]["exit_code"] is None
