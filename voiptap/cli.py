from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Tuple

import click
import uvicorn

from voiptap.config_loader import AppConfig, load_config
from voiptap.logging_setup import setup_logging
from voiptap.services.addresses import address_to_display
from voiptap.services.call_columns import Column
from voiptap.services.calls_session import VoipCallsSession
from voiptap.services.sip_feed import replay_pcap

LOGGER = logging.getLogger(__name__)

_COLUMN_CHOICES = [column.value for column in Column]


def _load_session(pcap: Path, config_path: Optional[Path], all_flows: bool) -> VoipCallsSession:
    try:
        config = load_config(config_path) if config_path else AppConfig()
        session = VoipCallsSession(config, all_flows=True if all_flows else None)
        replay_pcap(session, pcap)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    return session


@click.group()
def main() -> None:
    """voiptap commands."""
    setup_logging()
    LOGGER.debug("CLI bootstrap completed", extra={"category": "CONFIG"})


@main.command()
@click.argument("pcap", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--all-flows", is_flag=True, help="List every SIP dialog, not only INVITE-initiated calls.")
@click.option("--sort", "sort_column", type=click.Choice(_COLUMN_CHOICES), default=None, help="Sort column.")
@click.option("--descending", is_flag=True, help="Reverse the sort order.")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path), default=None)
def calls(pcap: Path, all_flows: bool, sort_column: Optional[str], descending: bool, config_path: Optional[Path]) -> None:
    """Print the call table of a capture."""
    session = _load_session(pcap, config_path, all_flows)
    table = session.table
    if sort_column is not None or descending:
        table.sort_by(Column(sort_column) if sort_column else table.sort_column, descending)
    widths = table.column_widths()

    click.echo(f"{session.title}: {len(session.store)} calls")
    click.echo("  ".join(["ID".rjust(4)] + [column.title.ljust(widths.get(column, 0)) for column in Column]).rstrip())
    for row in table.rows:
        cells = [str(row.call_id).rjust(4)] + [row.text(column).ljust(widths.get(column, 0)) for column in Column]
        click.echo("  ".join(cells).rstrip())


@main.command(name="filter")
@click.argument("pcap", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--call", "call_ids", type=int, multiple=True, required=True, help="Call id from the calls listing.")
@click.option("--all-flows", is_flag=True)
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path), default=None)
def filter_command(pcap: Path, call_ids: Tuple[int, ...], all_flows: bool, config_path: Optional[Path]) -> None:
    """Print a display filter matching the frames of the selected calls."""
    session = _load_session(pcap, config_path, all_flows)
    click.echo(session.prepare_filter(call_ids))


@main.command()
@click.argument("pcap", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--call", "call_ids", type=int, multiple=True, required=True, help="Call id from the calls listing.")
@click.option("--all-flows", is_flag=True)
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path), default=None)
def flow(pcap: Path, call_ids: Tuple[int, ...], all_flows: bool, config_path: Optional[Path]) -> None:
    """Print the flow sequence of the selected calls."""
    session = _load_session(pcap, config_path, all_flows)
    handoff = session.show_sequence(call_ids)
    if handoff is None:
        return
    precision = session.config.calls.time_precision
    for item in handoff.index.visible():
        click.echo(
            f"{item.frame_number:>6}  {item.rel_ts:.{precision}f}  "
            f"{address_to_display(item.src)} -> {address_to_display(item.dst)}  "
            f"[call {item.conv_id}]  {item.frame_label}"
        )


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
def web(host: str, port: int) -> None:
    """Start the HTTP API."""
    LOGGER.info("CLI web command host=%s port=%s", host, port, extra={"category": "CONFIG"})
    uvicorn.run("voiptap.web.app:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
