"""
POS agent process tests. Backend and local print service are httpx
MockTransports; stdin/stdout are in-memory streams.
"""

import io
import json

import httpx
import pytest

from canteen.agents.agent import AgentConfigError, AgentSettings, PosAgent, main
from canteen.agents.config_file import agent_entry, write_agent_config


SETTINGS = AgentSettings(
    theater_id=7,
    username="agent7",
    password="Password123",
    pin=None,
    label="Screen 7",
    backend_url="http://backend.test",
    local_print_url="http://printer.test",
)


def backend_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/api/auth/login":
        body = json.loads(request.content)
        if body["password"] != "Password123":
            return httpx.Response(401, json={"success": False, "error": "Unauthenticated"})
        return httpx.Response(200, json={"success": True, "data": {"token": "tok-7"}})
    if request.url.path == "/api/theaters/7/printer":
        assert request.headers["Authorization"] == "Bearer tok-7"
        return httpx.Response(200, json={"success": True, "data": {
            "theater_id": 7,
            "printers": [{"name": "Counter"}],
            "default_receipt_printer": "Counter",
        }})
    return httpx.Response(404)


class PrintService:
    def __init__(self, status=200):
        self.status = status
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        return httpx.Response(self.status, json={"ok": self.status < 400})


def make_agent(printer=None, settings=SETTINGS):
    printer = printer or PrintService()
    out = io.StringIO()
    agent = PosAgent(
        settings,
        backend_client=httpx.Client(transport=httpx.MockTransport(backend_handler), base_url=settings.backend_url),
        print_client=httpx.Client(transport=httpx.MockTransport(printer), base_url=settings.local_print_url),
        out=out,
    )
    return agent, printer, out


def emitted(out):
    return [json.loads(line) for line in out.getvalue().splitlines() if line.startswith("{")]


def test_connect_loads_token_and_printer_config():
    agent, _, _ = make_agent()
    agent.connect()
    assert agent.token == "tok-7"
    assert agent.printer_config["default_receipt_printer"] == "Counter"


def test_print_frame_uses_default_printer_and_acks():
    agent, printer, _ = make_agent()
    agent.connect()

    reply = agent.handle_frame({"type": "print", "jobId": 3, "printerHint": None, "metadata": {"orderNumber": "SC-007-000001"}, "html": "<p/>"})

    assert reply == {"type": "ack", "jobId": 3}
    assert printer.requests[0]["printer"] == "Counter"
    assert printer.requests[0]["metadata"]["orderNumber"] == "SC-007-000001"


def test_printer_hint_wins_over_default():
    agent, printer, _ = make_agent()
    agent.connect()
    agent.handle_frame({"type": "print", "jobId": 4, "printerHint": "Bar", "html": "<p/>"})
    assert printer.requests[0]["printer"] == "Bar"


def test_print_service_error_nacks():
    agent, _, _ = make_agent(PrintService(status=503))
    reply = agent.handle_frame({"type": "print", "jobId": 5, "html": "<p/>"})
    assert reply["type"] == "nack"
    assert "503" in reply["error"]


def test_unsupported_frame_is_nacked():
    agent, printer, _ = make_agent()
    reply = agent.handle_frame({"type": "reboot", "jobId": 6})
    assert reply["type"] == "nack"
    assert printer.requests == []


def test_bad_credentials_are_reported_not_fatal(capsys):
    settings = AgentSettings(**{**SETTINGS.__dict__, "password": "wrong"})
    agent, _, _ = make_agent(settings=settings)
    agent.connect()
    assert agent.token is None
    assert "backend connect failed" in capsys.readouterr().err


def test_run_loop_replies_per_line_and_exits_on_eof():
    agent, printer, out = make_agent()
    stdin = io.StringIO(
        json.dumps({"type": "print", "jobId": 1, "html": "<p/>"}) + "\n"
        + "not json\n"
        + "\n"
        + json.dumps({"type": "print", "jobId": 2, "html": "<p/>"}) + "\n"
    )

    assert agent.run(stdin, heartbeat_interval=3600) == 0

    messages = emitted(out)
    assert messages[0]["type"] == "heartbeat"
    assert messages[0]["theaterId"] == 7
    assert [m for m in messages if m["type"] == "ack"] == [
        {"type": "ack", "jobId": 1},
        {"type": "ack", "jobId": 2},
    ]
    assert len(printer.requests) == 2


def test_settings_from_environment_and_config_file(tmp_path):
    path = tmp_path / "config.json"
    write_agent_config(path, backend_url="http://backend.test/", agents=[
        agent_entry(theater_id=9, username="agent9", password="Password123", pin="1111", label="Lobby"),
    ])

    settings = AgentSettings.from_env({"THEATER_ID": "9", "AGENT_CONFIG_PATH": str(path)})
    assert settings.username == "agent9"
    assert settings.pin == "1111"
    assert settings.label == "Lobby"
    assert settings.backend_url == "http://backend.test"

    overridden = AgentSettings.from_env({
        "THEATER_ID": "9",
        "AGENT_CONFIG_PATH": str(path),
        "THEATER_USERNAME": "other",
        "THEATER_PASSWORD": "Secret1234",
    })
    assert overridden.username == "other"


@pytest.mark.parametrize("env", [
    {},
    {"THEATER_ID": "9"},
    {"THEATER_ID": "nine", "THEATER_USERNAME": "a", "THEATER_PASSWORD": "b"},
])
def test_missing_settings_are_config_errors(env):
    with pytest.raises(AgentConfigError):
        AgentSettings.from_env(env)


def test_main_exits_2_without_theater(capsys):
    assert main({}) == 2
    assert "THEATER_ID" in capsys.readouterr().err
