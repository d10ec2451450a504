"""Retention sweep: delete expired conversations, then refresh insights."""

import asyncio
import logging
from typing import Optional

import click

from termchat.config import configure_logging, get_config
from termchat.conversation.storage import ConversationStore
from termchat.errors import StorageFailure

logger = logging.getLogger(__name__)


async def run_cleanup(store: ConversationStore, retention_days: int) -> dict:
    deleted = await store.cleanup_expired(retention_days)
    insights = await store.compute_insights()
    return {"deleted": deleted, "insights": insights}


@click.command()
@click.option(
    "--retention-days",
    type=int,
    default=None,
    help="Delete conversations idle for longer than this (default from config).",
)
@click.option("--data-dir", type=click.Path(file_okay=False), default=None, help="Data directory.")
def main(retention_days: Optional[int], data_dir: Optional[str]):
    """Run the conversation retention sweep and recompute usage insights."""
    config = get_config()
    configure_logging(config.server.log_level)
    days = retention_days if retention_days is not None else config.storage.retention_days
    store = ConversationStore(data_dir or config.data_dir)

    try:
        result = asyncio.run(run_cleanup(store, days))
    except StorageFailure as e:
        logger.error("Cleanup failed: %s", e.message)
        raise click.ClickException(e.message)

    insights = result["insights"]
    click.echo(f"Deleted {result['deleted']} conversations older than {days} days")
    click.echo(
        f"Insights: {insights.total_conversations} conversations, "
        f"{insights.total_messages} messages, "
        f"{insights.average_messages_per_conversation} per conversation"
    )


if __name__ == "__main__":
    main()
