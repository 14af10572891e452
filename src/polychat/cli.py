"""CLI interface for polychat."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys

import click

from . import __version__
from .attachments import Attachment
from .client import ChatClient
from .config import DATA_DIR, SQLITE_PATH
from .errors import ChatError, StorageError
from .models import ConversationState
from .orchestrator import ChatOrchestrator
from .providers import REGISTRY
from .settings import Settings, credential_env_var
from .storage import SessionStore


def _open_store() -> SessionStore:
    try:
        return SessionStore(SQLITE_PATH)
    except ChatError as e:
        raise click.ClickException(e.message) from e


@contextlib.contextmanager
def _session_store():
    """Open the store for one command, reporting storage failures as CLI errors."""
    store = _open_store()
    try:
        yield store
    except StorageError as e:
        raise click.ClickException(e.message) from e
    finally:
        store.close()


def _resolve_session_id(store: SessionStore, prefix: str) -> str:
    """Accept a full conversation id or a unique prefix of one."""
    matches = [c.id for c in store.list() if c.id.startswith(prefix)]
    if not matches:
        raise click.ClickException(f"No conversation matches '{prefix}'")
    if len(matches) > 1:
        raise click.ClickException(f"'{prefix}' is ambiguous ({len(matches)} conversations)")
    return matches[0]


def _format_error(state: ConversationState) -> str:
    error = state.error
    text = f"Error ({error.kind.value}): {error.message}"
    if error.hint:
        text += f"\n  {error.hint}"
    return text


class _StreamPrinter:
    """Echo assistant text as it grows while a response is in flight."""

    def __init__(self):
        self.message_id: str | None = None
        self.printed = 0

    def __call__(self, state: ConversationState):
        if not state.is_streaming or not state.messages:
            return
        last = state.messages[-1]
        if not last.is_assistant:
            return
        if last.id != self.message_id:
            self.message_id = last.id
            self.printed = 0
        if len(last.text) > self.printed:
            click.echo(last.text[self.printed:], nl=False)
            self.printed = len(last.text)


@click.group()
@click.version_option(version=__version__, prog_name="polychat")
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging on stderr.")
def cli(verbose: bool):
    """Chat with GLM, OpenRouter and other providers from the terminal.

    Conversations are saved automatically and can be resumed later.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


@cli.command()
@click.argument("message", required=False)
@click.option(
    "--attach", "attach", multiple=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Attach a file (repeatable). Text files are inlined, images are sent to vision models.",
)
@click.option("--new", "new_chat", is_flag=True, help="Start a fresh conversation.")
@click.option("--session", "session_id", help="Resume a conversation by id or id prefix.")
def chat(message: str | None, attach: tuple[str, ...], new_chat: bool, session_id: str | None):
    """Send MESSAGE, or start an interactive chat when MESSAGE is omitted.

    Interactive commands: /new, /edit N TEXT (rewrite your Nth message and
    regenerate from there), /quit.
    """
    asyncio.run(_chat(message, attach, new_chat, session_id))


async def _chat(message, attach, new_chat, session_id):
    store = _open_store()
    client = ChatClient()
    orchestrator = ChatOrchestrator(store, Settings(store), client)
    orchestrator.subscribe(_StreamPrinter())

    try:
        await orchestrator.start()
        if session_id:
            if not await orchestrator.load_conversation(_resolve_session_id(store, session_id)):
                raise click.ClickException(orchestrator.state.error.message)
        if new_chat:
            await orchestrator.clear_conversation()

        if message or attach:
            await _exchange(orchestrator, message or "", [Attachment.from_path(p) for p in attach])
            if orchestrator.state.error:
                raise click.ClickException(_format_error(orchestrator.state))
        else:
            await _interactive(orchestrator)
    except StorageError as e:
        raise click.ClickException(e.message) from e
    finally:
        await orchestrator.aclose()
        await client.aclose()
        store.close()


async def _exchange(orchestrator: ChatOrchestrator, text: str, attachments: list[Attachment]):
    if not await orchestrator.send_message(text, attachments):
        return
    await orchestrator.wait_idle()
    click.echo()
    _report(orchestrator.state)


def _report(state: ConversationState):
    if state.error:
        click.echo(click.style(_format_error(state), fg="red"), err=True)
    if state.warning:
        click.echo(click.style(state.warning, fg="yellow"), err=True)


async def _interactive(orchestrator: ChatOrchestrator):
    click.echo(click.style("polychat", bold=True) + ": type /quit to exit, /new for a fresh chat.")
    while True:
        try:
            line = click.prompt("you", prompt_suffix="> ", default="", show_default=False)
        except click.Abort:
            click.echo()
            break

        line = line.strip()
        if not line:
            continue
        if line == "/quit":
            break
        if line == "/new":
            await orchestrator.clear_conversation()
            click.echo("Started a new conversation.")
            continue
        if line.startswith("/edit "):
            await _edit(orchestrator, line[len("/edit "):])
            continue

        orchestrator.clear_error()
        await _exchange(orchestrator, line, [])


async def _edit(orchestrator: ChatOrchestrator, args: str):
    number, _, text = args.partition(" ")
    user_messages = [m for m in orchestrator.state.messages if m.is_user]
    if not number.isdigit() or not 1 <= int(number) <= len(user_messages) or not text.strip():
        click.echo("Usage: /edit N TEXT (N counts your messages from 1)", err=True)
        return

    orchestrator.clear_error()
    orchestrator.start_editing(user_messages[int(number) - 1].id)
    if await orchestrator.commit_edit(text):
        await orchestrator.wait_idle()
        click.echo()
        _report(orchestrator.state)


@cli.command()
def sessions():
    """List saved conversations, most recent first."""
    with _session_store() as store:
        convs = store.list()
        active_id = store.active_id

    if not convs:
        click.echo("No conversations yet. Start one with: polychat chat")
        return

    for conv in convs:
        marker = "*" if conv.id == active_id else " "
        updated = conv.updated_at.astimezone().strftime("%Y-%m-%d %H:%M")
        click.echo(f"{marker} {conv.id[:8]}  {updated}  {conv.message_count:>4} msgs  {conv.title}")


@cli.command()
@click.argument("session_id")
def show(session_id: str):
    """Print the transcript of a conversation."""
    with _session_store() as store:
        conv = store.get(_resolve_session_id(store, session_id))

    click.echo(click.style(conv.title, bold=True))
    for msg in conv.messages:
        label = "You" if msg.is_user else "Assistant"
        if msg.edited:
            label += " (edited)"
        click.echo()
        click.echo(click.style(label, fg="cyan" if msg.is_user else "green"))
        click.echo(msg.text)
        for att in msg.attachments:
            click.echo(f"  [attached: {att.display_name}]")


@cli.command()
@click.argument("session_id")
def delete(session_id: str):
    """Delete one conversation."""
    with _session_store() as store:
        conv_id = _resolve_session_id(store, session_id)
        store.delete(conv_id)
    click.echo(f"Deleted {conv_id}")


@cli.command()
@click.confirmation_option(prompt="This will delete all conversations. Are you sure?")
def reset():
    """Delete all conversations (settings and API keys are kept)."""
    with _session_store() as store:
        store.delete_all()
    click.echo("Deleted all conversations.")


@cli.command()
def providers():
    """List available providers and their models."""
    with _session_store() as store:
        selected = Settings(store).get_selected_provider()

    for provider in REGISTRY.list():
        marker = "*" if provider.provider_id == selected else " "
        click.echo(f"{marker} {click.style(provider.provider_id, bold=True)}  {provider.display_name}")
        click.echo(f"    Default model: {provider.default_model}")
        if provider.example_models:
            click.echo(f"    Examples:      {', '.join(provider.example_models)}")
        if provider.models_url:
            click.echo(f"    Model list:    {provider.models_url}")
        click.echo(f"    {provider.model_hint}")


@cli.group()
def config():
    """Show or change settings."""


@config.command("show")
def config_show():
    """Print the current settings."""
    with _session_store() as store:
        settings = Settings(store)
        provider = settings.get_provider()
        key = settings.masked_credential() or "(not set)"
        click.echo()
        click.echo(click.style("polychat settings", bold=True))
        click.echo(f"  Provider:  {provider.display_name} ({provider.provider_id})")
        click.echo(f"  Model:     {settings.get_model_name()}")
        click.echo(f"  API key:   {key}  (env: {credential_env_var(provider.provider_id)})")
        click.echo(f"  Timeout:   {settings.get_request_timeout_seconds()}s")
        click.echo(f"  Streaming: {'on' if settings.get_stream_responses() else 'off'}")
        click.echo(f"  Location:  {DATA_DIR}")
        click.echo()


@config.command("set-key")
@click.argument("key")
@click.option("--provider", "provider_id", help="Provider the key belongs to (default: selected).")
def config_set_key(key: str, provider_id: str | None):
    """Store an API key."""
    with _session_store() as store:
        try:
            looks_valid = Settings(store).set_credential(key, provider_id)
        except (ChatError, ValueError) as e:
            raise click.ClickException(str(e)) from e
    click.echo("API key saved.")
    if not looks_valid:
        click.echo("Warning: this key looks too short for the provider.", err=True)


@config.command("set-provider")
@click.argument("provider_id", type=click.Choice([p.provider_id for p in REGISTRY.list()]))
def config_set_provider(provider_id: str):
    """Select the provider used for new messages."""
    with _session_store() as store:
        model = Settings(store).set_provider(provider_id)
    click.echo(f"Provider set to {provider_id} (model: {model}).")


@config.command("set-model")
@click.argument("model")
def config_set_model(model: str):
    """Select the model for the current provider."""
    with _session_store() as store:
        try:
            Settings(store).set_model_name(model)
        except ChatError as e:
            raise click.ClickException(f"{e.message}. {e.hint}") from e
    click.echo(f"Model set to {model}.")


@config.command("set-timeout")
@click.argument("seconds", type=click.IntRange(min=1))
def config_set_timeout(seconds: int):
    """Set the request timeout in seconds."""
    with _session_store() as store:
        Settings(store).set_request_timeout(seconds)
    click.echo(f"Timeout set to {seconds}s.")


@config.command("set-stream")
@click.argument("enabled", type=click.Choice(["on", "off"]))
def config_set_stream(enabled: str):
    """Turn streamed responses on or off."""
    with _session_store() as store:
        Settings(store).set_stream_responses(enabled == "on")
    click.echo(f"Streaming {enabled}.")
