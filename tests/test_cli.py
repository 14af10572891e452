import httpx
import pytest
from click.testing import CliRunner

from conftest import VALID_KEY, sse_body
from polychat import cli as cli_module
from polychat.cli import cli
from polychat.client import ChatClient
from polychat.errors import StorageError
from polychat.models import Message, Role
from polychat.storage import SessionStore


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "polychat.db"
    monkeypatch.setattr(cli_module, "SQLITE_PATH", path)
    monkeypatch.setenv("POLYCHAT_GLM_API_KEY", VALID_KEY)
    monkeypatch.delenv("POLYCHAT_OPENROUTER_API_KEY", raising=False)
    return path


@pytest.fixture
def http_handler(monkeypatch):
    """Route the CLI's HTTP traffic to a replaceable handler."""
    handlers = {"handler": lambda request: httpx.Response(200, content=sse_body("Hi", " there"))}

    def transport(request):
        return handlers["handler"](request)

    monkeypatch.setattr(
        cli_module,
        "ChatClient",
        lambda: ChatClient(httpx.AsyncClient(transport=httpx.MockTransport(transport))),
    )
    return handlers


def _seed(db_path, *texts):
    store = SessionStore(db_path)
    try:
        conv = store.create()
        roles = [Role.USER, Role.ASSISTANT]
        messages = tuple(Message(role=roles[i % 2], text=t) for i, t in enumerate(texts))
        conv = conv.with_messages(messages).with_updated_title()
        store.update(conv)
        return conv
    finally:
        store.close()


def test_chat_streams_reply_and_saves(db_path, http_handler):
    runner = CliRunner()
    result = runner.invoke(cli, ["chat", "Hello"])
    assert result.exit_code == 0, result.output
    assert "Hi there" in result.output

    result = runner.invoke(cli, ["sessions"])
    assert "Hello" in result.output
    assert "2 msgs" in result.output
    assert result.output.startswith("*")


def test_chat_reports_provider_error(db_path, http_handler):
    http_handler["handler"] = lambda request: httpx.Response(401, json={"error": {"message": "bad key"}})
    result = CliRunner().invoke(cli, ["chat", "Hello"])
    assert result.exit_code == 1
    assert "Error (auth)" in result.output


def test_chat_with_attachment(db_path, http_handler, tmp_path):
    seen = {}

    def handler(request):
        seen["body"] = request.content.decode()
        return httpx.Response(200, content=sse_body("ok"))

    http_handler["handler"] = handler
    notes = tmp_path / "notes.txt"
    notes.write_text("remember the milk")

    result = CliRunner().invoke(cli, ["chat", "--attach", str(notes), "Summarize"])
    assert result.exit_code == 0, result.output
    assert "remember the milk" in seen["body"]
    assert "--- File: notes.txt ---" in seen["body"]


def test_sessions_empty(db_path):
    result = CliRunner().invoke(cli, ["sessions"])
    assert result.exit_code == 0
    assert "No conversations yet" in result.output


def test_show_by_prefix(db_path):
    conv = _seed(db_path, "What is WAL mode?", "Write-ahead logging.")
    result = CliRunner().invoke(cli, ["show", conv.id[:6]])
    assert result.exit_code == 0
    assert "What is WAL mode?" in result.output
    assert "Write-ahead logging." in result.output


def test_show_unknown(db_path):
    result = CliRunner().invoke(cli, ["show", "zzzz"])
    assert result.exit_code == 1
    assert "No conversation matches" in result.output


def test_delete_and_reset(db_path):
    first = _seed(db_path, "one")
    _seed(db_path, "two")

    runner = CliRunner()
    result = runner.invoke(cli, ["delete", first.id])
    assert result.exit_code == 0
    assert f"Deleted {first.id}" in result.output

    result = runner.invoke(cli, ["reset", "--yes"])
    assert result.exit_code == 0
    store = SessionStore(db_path)
    try:
        assert store.list() == []
    finally:
        store.close()


def test_providers_lists_builtins(db_path):
    result = CliRunner().invoke(cli, ["providers"])
    assert result.exit_code == 0
    assert "glm" in result.output
    assert "openrouter" in result.output
    assert "glm-4.7" in result.output
    assert "Model list:    https://openrouter.ai/api/v1/models" in result.output


def test_config_flow(db_path):
    runner = CliRunner()
    result = runner.invoke(cli, ["config", "set-provider", "openrouter"])
    assert result.exit_code == 0
    assert "anthropic/claude-3.5-sonnet" in result.output

    result = runner.invoke(cli, ["config", "set-model", "openai/gpt-4o"])
    assert result.exit_code == 0

    result = runner.invoke(cli, ["config", "set-key", "sk-or-v1-0123456789abcdef"])
    assert result.exit_code == 0
    assert "API key saved." in result.output

    runner.invoke(cli, ["config", "set-timeout", "30"])
    runner.invoke(cli, ["config", "set-stream", "off"])

    result = runner.invoke(cli, ["config", "show"])
    assert "OpenRouter (openrouter)" in result.output
    assert "openai/gpt-4o" in result.output
    assert "sk-o...cdef" in result.output
    assert "30s" in result.output
    assert "Streaming: off" in result.output


def test_config_rejects_bad_model(db_path):
    result = CliRunner().invoke(cli, ["config", "set-model", "gpt-4"])
    assert result.exit_code == 1
    assert "glm-" in result.output


def test_config_rejects_bad_timeout(db_path):
    result = CliRunner().invoke(cli, ["config", "set-timeout", "0"])
    assert result.exit_code == 2


def test_config_warns_on_short_key(db_path):
    result = CliRunner().invoke(cli, ["config", "set-key", "abc"])
    assert result.exit_code == 0
    assert "looks too short" in result.output



@pytest.mark.parametrize("args", [["sessions"], ["show", "abcd"], ["delete", "abcd"], ["reset", "--yes"]])
def test_storage_failures_are_reported(db_path, monkeypatch, args):
    def fail(self, *a, **kw):
        raise StorageError("database is locked")

    monkeypatch.setattr(SessionStore, "list", fail)
    monkeypatch.setattr(SessionStore, "delete_all", fail)
    result = CliRunner().invoke(cli, args)
    assert result.exit_code == 1
    assert "database is locked" in result.output
    assert not isinstance(result.exception, StorageError)
