"""Terminal front end for the chat server."""

import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Optional

import click

from .api_client import DEFAULT_BASE_URL, ApiClient, ClientError
from .consumer import DisplayMessage
from .local_store import LocalConversationStore
from .session import ChatSession

logger = logging.getLogger(__name__)

HELP_TEXT = """Commands:
  /new            start a new conversation
  /model <id>     switch model
  /models         list available models
  /history        list saved conversations
  /load <id>      reopen a saved conversation
  /exit           quit
Press Ctrl+C while a reply is streaming to stop it."""


def _default_store_dir() -> Path:
    home = Path(os.environ.get("TERMCHAT_HOME", Path.home() / ".termchat"))
    return home / "client"


class TerminalRenderer:
    """Print message updates incrementally as the typing reveal advances."""

    def __init__(self):
        self._printed: dict[str, str] = {}

    def __call__(self, message: DisplayMessage) -> None:
        if message.role == "user":
            return
        if message.role == "system":
            click.echo(click.style(f"[system] {message.content}", dim=True))
            return

        shown = self._printed.get(message.id)
        if shown is None:
            click.echo(click.style("assistant> ", fg="green"), nl=False)
            shown = ""
        if message.content.startswith(shown):
            click.echo(message.content[len(shown):], nl=False)
        else:
            click.echo("\n" + message.content, nl=False)
        self._printed[message.id] = message.content
        if not message.is_typing:
            click.echo()


def _print_models(data: dict) -> None:
    default = data.get("default")
    for m in data.get("models", []):
        marker = "*" if m["id"] == default else " "
        stream = "stream" if m.get("streaming") else "single"
        click.echo(f" {marker} {m['id']:<20} {m['provider']:<9} {stream:<7} {m.get('description', '')}")


async def _handle_command(line: str, session: ChatSession, api: ApiClient) -> bool:
    """Run a slash command; False when the REPL should exit."""
    cmd, _, arg = line.partition(" ")
    arg = arg.strip()
    if cmd in ("/exit", "/quit"):
        return False
    if cmd == "/new":
        session.new_chat()
        click.echo(f"New conversation {session.conversation_id}")
    elif cmd == "/model":
        if arg:
            session.model = arg
        click.echo(f"Model: {session.model or '(server default)'}")
    elif cmd == "/models":
        try:
            _print_models(await api.get_models())
        except ClientError as e:
            click.echo(click.style(e.message, fg="red"), err=True)
    elif cmd == "/history":
        records = session.store.list_records() if session.store else []
        for r in records:
            click.echo(f"  {r['id']}  {r.get('title', '')}  ({len(r.get('messages', []))} messages)")
        if not records:
            click.echo("No saved conversations.")
    elif cmd == "/load":
        if session.load(arg):
            click.echo(f"Loaded {arg} ({len(session.messages)} messages)")
        else:
            click.echo(f"No saved conversation {arg}", err=True)
    else:
        click.echo(HELP_TEXT)
    return True


async def _run_turn(session: ChatSession, text: str) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, session.stop)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False
    try:
        await session.submit(text)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


async def _repl(session: ChatSession, api: ApiClient) -> None:
    if not await api.test_connection():
        click.echo(
            click.style(f"Warning: server at {api.base_url} is not responding", fg="yellow"),
            err=True,
        )
    click.echo(f"Conversation {session.conversation_id}. Type /help for commands.")
    while True:
        try:
            line = await asyncio.to_thread(
                click.prompt, click.style("you", fg="cyan"), prompt_suffix="> ",
                default="", show_default=False,
            )
        except (EOFError, click.Abort):
            break
        line = line.strip()
        if not line:
            continue
        if line.startswith("/"):
            if not await _handle_command(line, session, api):
                break
            continue
        await _run_turn(session, line)


@click.group(invoke_without_command=True)
@click.option(
    "--server",
    envvar="TERMCHAT_API_BASE_URL",
    default=DEFAULT_BASE_URL,
    show_default=True,
    help="Base URL of the chat server.",
)
@click.option("--model", default=None, help="Model id (server default when omitted).")
@click.option("--conversation", "conversation_id", default=None, help="Resume a conversation id.")
@click.option("-v", "--verbose", is_flag=True, help="Log client activity to stderr.")
@click.pass_context
def cli(ctx, server: str, model: Optional[str], conversation_id: Optional[str], verbose: bool):
    """termchat: chat with hosted LLMs from the terminal."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    ctx.obj = ApiClient(server)
    if ctx.invoked_subcommand is not None:
        return

    store = LocalConversationStore(_default_store_dir())
    session = ChatSession(ctx.obj, model=model, store=store, on_update=TerminalRenderer())
    if conversation_id and not session.load(conversation_id):
        session.conversation_id = conversation_id
    asyncio.run(_repl(session, ctx.obj))


@cli.command()
@click.pass_obj
def models(api: ApiClient):
    """List the models the server offers."""
    try:
        _print_models(asyncio.run(api.get_models()))
    except ClientError as e:
        raise click.ClickException(e.message)


@cli.command()
@click.pass_obj
def health(api: ApiClient):
    """Check that the server is up."""
    try:
        data = asyncio.run(api.health_check())
    except ClientError as e:
        raise click.ClickException(e.message)
    click.echo(f"{data.get('status')} (uptime {data.get('uptime')}s, {data.get('environment')})")


if __name__ == "__main__":
    cli()
