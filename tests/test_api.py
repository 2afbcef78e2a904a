"""
Basic API tests for the execution service.

These tests exercise the HTTP endpoints using FastAPI's TestClient.  They
verify that code can be executed in Python and Bash, that failures are
reported in the response body, that executions can be stopped, and that
the discovery and health endpoints are operational.
"""

from __future__ import annotations

import threading
import time

import pytest
from fastapi.testclient import TestClient

from polyexec.api import create_app


@pytest.fixture
def client(config):
    with TestClient(create_app(config)) as client:
        yield client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_languages(client):
    response = client.get("/v1/languages")
    assert response.status_code == 200
    languages = {lang["id"]: lang for lang in response.json()["languages"]}
    assert languages["python"]["sandboxed"] is True
    assert languages["cpp"]["has_compilation"] is True
    assert languages["cpp"]["extension"] == ".cpp"
    assert "js" in languages["javascript"]["aliases"]


def test_execute_python_simple(client):
    res = client.post("/v1/execute", json={"language": "python", "code": "print(1 + 1)"})
    assert res.status_code == 200
    data = res.json()
    assert data["success"] is True
    assert data["status"] == "succeeded"
    assert data["stdout"].strip() == "2"
    assert data["exit_code"] == 0
    assert data["stage"] == "execution"
    assert data["execution_time_ms"] >= 0


def test_execute_bash_simple(client):
    res = client.post(
        "/v1/execute",
        json={"language": "bash", "code": "read who\necho \"test $who\"", "stdin": "bash\n"},
    )
    assert res.status_code == 200
    data = res.json()
    assert data["success"] is True
    assert "test bash" in data["stdout"]
    assert data["language"] == "shell"


def test_execute_failures_are_still_200(client):
    res = client.post("/v1/execute", json={"language": "python", "code": "1/0"})
    assert res.status_code == 200
    data = res.json()
    assert data["success"] is False
    assert data["status"] == "runtime_error"
    assert "ZeroDivisionError" in data["stderr"]

    res = client.post("/v1/execute", json={"language": "brainfuck", "code": "+."})
    assert res.status_code == 200
    assert res.json()["status"] == "unsupported_language"

    res = client.post("/v1/execute", json={"language": "python", "code": ""})
    assert res.status_code == 200
    assert res.json()["status"] == "validation_failed"


def test_python_file_access_is_denied(client):
    code = "with open('output.txt', 'w') as f:\n    f.write('hello world')\nprint('done')\n"
    res = client.post("/v1/execute", json={"language": "python", "code": code})
    data = res.json()
    assert data["status"] == "capability_denied"
    assert data["stdout"] == ""


def test_execute_with_caller_id(client):
    res = client.post(
        "/v1/execute",
        json={"language": "python", "code": "print('x')", "execution_id": "my-run"},
    )
    assert res.json()["execution_id"] == "my-run"


def test_malformed_body(client):
    res = client.post("/v1/execute", json={"code": "print(1)"})
    assert res.status_code == 422


def test_stop_unknown(client):
    res = client.post("/v1/executions/nope/stop")
    assert res.status_code == 404


def test_stop_running_execution(client):
    results = {}

    def run():
        results["response"] = client.post(
            "/v1/execute",
            json={"language": "shell", "code": "sleep 30", "execution_id": "stop-me"},
        )

    worker = threading.Thread(target=run)
    worker.start()
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        stop = client.post("/v1/executions/stop-me/stop")
        if stop.status_code == 200:
            break
        time.sleep(0.05)
    worker.join(10)
    assert stop.status_code == 200
    assert results["response"].json()["status"] == "cancelled"


def test_validate(client):
    res = client.post("/v1/validate", json={"language": "py", "code": "def f(:\n    pass"})
    assert res.status_code == 200
    data = res.json()
    assert data["success"] is False
    assert data["language"] == "python"
    assert data["issues"][0]["type"] == "syntax"
    assert data["issues"][0]["line"] == 1

    res = client.post("/v1/validate", json={"language": "javascript", "code": "eval('1')"})
    data = res.json()
    assert data["success"] is True
    assert data["issues"] == [
        {"type": "security", "message": "Avoid using eval() - security risk", "line": 1}
    ]


def test_validate_rejects_unknown_language(client):
    res = client.post("/v1/validate", json={"language": "cobol", "code": "x"})
    assert res.status_code == 400


def test_system(client):
    res = client.get("/v1/system")
    assert res.status_code == 200
    data = res.json()
    assert "python" in data["languages"]
    assert data["limits"]["max_concurrency"] == 4
    assert data["stats"]["active"] == 0
