"""Entry point for running boardsync as a module."""

import asyncio
import json
import re
from pathlib import Path
from typing import Annotated

import typer
from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory
from prompt_toolkit.patch_stdout import patch_stdout
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from boardsync import __version__
from boardsync.board.models import Card, CounterKind, LibraryPlacement, Zone
from boardsync.config import BoardSyncConfig
from boardsync.errors import BoardSyncError
from boardsync.identity import load_or_create_player_id
from boardsync.logging import get_logger, setup_from_config
from boardsync.sync.engine import ReplicationEngine
from boardsync.sync.protocol import Role
from boardsync.sync.server import RelayServer
from boardsync.sync.session import SessionManager, SessionStatus
from boardsync.sync.transport import WebSocketTransport

app = typer.Typer(
    name="boardsync",
    help="Shared card-game tabletop over a WebSocket relay.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
config_app = typer.Typer(help="View and manage configuration")
app.add_typer(config_app, name="config")

console = Console()
logger = get_logger("cli")

_DECK_LINE = re.compile(r"^(?:(\d+)x?\s+)?(.+)$")


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"[bold cyan]boardsync[/bold cyan] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option("--version", "-V", callback=version_callback, is_eager=True, help="Show version and exit."),
    ] = False,
):
    """boardsync - play cards on a shared table.

    [bold]Quick Start:[/bold]

        boardsync relay                   Run a relay server
        boardsync host ROOM -p SECRET     Open a room
        boardsync join ROOM -p SECRET     Join a room
    """


def _load_config(console_level: str = "WARNING") -> BoardSyncConfig:
    config = BoardSyncConfig.load()
    config.ensure_dirs()
    setup_from_config(config, console_level=console_level)
    if not config.config_file.exists():
        config.save()
        logger.info(f"Created default config at {config.config_file}")
    return config


# =============================================================================
# Commands
# =============================================================================


@app.command()
def relay(
    host: str | None = typer.Option(None, "--host", "-h", help="Interface to bind"),
    port: int | None = typer.Option(None, "--port", "-p", help="Port to listen on"),
):
    """Run the relay server that routes rooms."""
    config = _load_config(console_level="INFO")
    server = RelayServer(host=host or config.relay.host, port=port or config.relay.port)
    console.print(f"[bold cyan]Relay[/bold cyan] listening on ws://{server.host}:{server.port}")
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        console.print("[dim]Relay stopped.[/dim]")


@app.command()
def host(
    room: str = typer.Argument(..., help="Room id"),
    password: str = typer.Option(..., "--password", "-p", prompt=True, hide_input=True, help="Room password"),
    name: str | None = typer.Option(None, "--name", "-n", help="Player name"),
    url: str | None = typer.Option(None, "--url", "-u", help="Relay URL"),
):
    """Open a room and play as its host."""
    _run_table(Role.HOST, room, password, name, url)


@app.command()
def join(
    room: str = typer.Argument(..., help="Room id"),
    password: str = typer.Option(..., "--password", "-p", prompt=True, hide_input=True, help="Room password"),
    name: str | None = typer.Option(None, "--name", "-n", help="Player name"),
    url: str | None = typer.Option(None, "--url", "-u", help="Relay URL"),
):
    """Join a room as a peer."""
    _run_table(Role.PEER, room, password, name, url)


@config_app.command("show")
def config_show(
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
):
    """Show current configuration."""
    config = BoardSyncConfig.load()
    config_dict = config.to_dict()

    if json_output:
        print(json.dumps(config_dict, indent=2, default=str))
        return

    console.print(Panel("[bold]boardsync Configuration[/bold]", border_style="blue"))
    table = Table(show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in config_dict.items():
        if isinstance(value, dict):
            for sub_key, sub_value in value.items():
                table.add_row(f"{key}.{sub_key}", str(sub_value) if sub_value != "" else "[dim]not set[/dim]")
        else:
            table.add_row(key, str(value))
    console.print(table)


@config_app.command("path")
def config_path() -> None:
    """Show configuration file location."""
    config = BoardSyncConfig.load()
    marker = "[green]✓[/green]" if config.config_file.exists() else "[yellow]○[/yellow]"
    console.print(f"{marker} config: {config.config_file}")
    console.print(f"  log: {config.log_file}")


# =============================================================================
# Interactive table
# =============================================================================


def _run_table(role: Role, room: str, password: str, name: str | None, url: str | None) -> None:
    config = _load_config()
    player_name = name or config.player.name or typer.prompt("Player name")
    if url:
        config.session.relay_url = url
    try:
        asyncio.run(_play(config, role, room, password, player_name))
    except KeyboardInterrupt:
        console.print("[dim]Goodbye.[/dim]")


async def _play(config: BoardSyncConfig, role: Role, room: str, password: str, player_name: str) -> None:
    player_id = load_or_create_player_id(config.data_dir)
    engine = ReplicationEngine(player_id, player_name, config.session)
    session = SessionManager(engine, lambda: WebSocketTransport(config.session.relay_url))

    def on_status(status: SessionStatus, error: BoardSyncError | None) -> None:
        if error is not None:
            console.print(f"[red]{status.value}:[/red] {error.message}")
        elif status == SessionStatus.CONNECTING:
            console.print("[yellow]connecting...[/yellow]")
        elif status == SessionStatus.CONNECTED and role == Role.PEER and session.is_host:
            console.print("[green]The host left, you are hosting the room now[/green]")

    session.add_status_callback(on_status)

    if role == Role.HOST:
        ok = await session.create_room(room, password)
    else:
        ok = await session.join_room(room, password) and await session.wait_until_synced()
    if not ok:
        console.print(f"[red]Could not enter room {room}[/red]")
        raise typer.Exit(1)

    console.print(
        Panel.fit(
            f"[bold cyan]{room}[/bold cyan]\n[dim]{role.value} as {player_name}[/dim]",
            border_style="cyan",
        )
    )
    console.print("\n[dim]Type 'help' for commands, 'exit' to leave[/dim]\n")

    prompt_session = PromptSession(history=FileHistory(str(config.data_dir / "history")))
    try:
        with patch_stdout():
            while True:
                user_input = (await prompt_session.prompt_async(f"{room}> ")).strip()
                if not user_input:
                    continue
                if user_input.lower() in ("exit", "quit", "leave"):
                    break
                try:
                    run_command(engine, session, user_input)
                except ValueError:
                    console.print("[red]Expected a number[/red]")
    except EOFError:
        pass
    finally:
        await session.leave()


def show_help() -> None:
    """Display help information."""
    console.print(
        """
[bold]Table:[/bold]
  board [player]           - Show a player's cards (yours by default)
  players                  - Show life totals and commander damage
  status                   - Show connection status

[bold]Cards:[/bold]
  add NAME                 - Put a card on the battlefield
  deck FILE                - Replace your library with a deck list
  draw [N]                 - Draw N cards
  tap ID / flip ID         - Toggle tapped / face down
  zone ID ZONE [top|bottom|random]
  commander ID             - Mark a card as your commander
  remove ID                - Remove a card from the table
  shuffle / mulligan       - Shuffle library / mulligan hand
  cascade N                - Reveal until a nonland with cmc <= N
  reset                    - Remove all your cards

[bold]Life:[/bold]
  life +N / -N / =N        - Change or set your life
  damage PLAYER N          - Commander damage dealt to you by PLAYER
  counter / counter ID N   - Create a counter / change its value

IDs may be shortened to any unique prefix.
"""
    )


def _find_card(engine: ReplicationEngine, prefix: str) -> Card | None:
    matches = [c for c in engine.store.cards.values() if c.id.startswith(prefix)]
    if len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        console.print(f"[red]Ambiguous ID, {len(matches)} matches[/red]")
    else:
        console.print("[red]Card not found[/red]")
    return None


def _parse_deck(path: Path) -> list[dict]:
    entries = []
    for line in path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith(("#", "//")):
            continue
        match = _DECK_LINE.match(line)
        count = int(match.group(1) or 1)
        entries.extend({"name": match.group(2).strip()} for _ in range(count))
    return entries


def show_board(engine: ReplicationEngine, player_name: str | None = None) -> None:
    """Show one player's cards grouped by zone."""
    store = engine.store
    player = store.player_by_name(player_name) if player_name else store.get_player(engine.player_id)
    owner_id = player.id if player else engine.player_id

    table = Table(title=f"{player.name if player else engine.player_name}'s board")
    table.add_column("ID", style="dim")
    table.add_column("Zone", style="cyan")
    table.add_column("Card")
    table.add_column("State", style="yellow")

    for zone in Zone:
        if zone in (Zone.LIBRARY, Zone.HAND) and owner_id != engine.player_id:
            cards = store.cards_in(owner_id, zone)
            if cards:
                table.add_row("", zone.value, f"[dim]{len(cards)} cards[/dim]", "")
            continue
        if zone == Zone.LIBRARY:
            table.add_row("", zone.value, f"[dim]{len(store.library(owner_id))} cards[/dim]", "")
            continue
        cards = store.hand(owner_id) if zone == Zone.HAND else store.pile(owner_id, zone)
        for card in cards:
            state = []
            if card.tapped:
                state.append("tapped")
            if card.flipped:
                state.append("face down")
            if card.is_commander:
                state.append(f"commander x{card.commander_deaths}")
            table.add_row(card.id[:6], zone.value, card.name, ", ".join(state))

    console.print(table)


def show_players(engine: ReplicationEngine) -> None:
    table = Table(title="Players")
    table.add_column("Name", style="cyan")
    table.add_column("Life", style="green")
    table.add_column("Commander damage")
    store = engine.store
    for player in store.players.values():
        damage = ", ".join(
            f"{store.players[a].name if a in store.players else a[:6]}: {d}"
            for a, d in player.commander_damage.items()
            if d
        )
        table.add_row(player.name, str(player.life), damage)
    console.print(table)


def show_status(engine: ReplicationEngine, session: SessionManager) -> None:
    table = Table(title="Session")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Room", session.room_id or "-")
    table.add_row("Role", session.role.value if session.role else "-")
    table.add_row("Status", session.status.value)
    table.add_row("Player", f"{engine.player_name} ({engine.player_id[:8]})")
    table.add_row("Unacknowledged", str(engine.pending_count))
    if session.is_host:
        table.add_row("Peers", ", ".join(c.player_name for c in session.get_connections()) or "-")
    table.add_row("Checksum", engine.store.checksum())
    console.print(table)


def run_command(engine: ReplicationEngine, session: SessionManager, user_input: str) -> None:
    """Execute one prompt command against the engine."""
    command, *args = user_input.split()
    command = command.lower()

    if command == "help":
        show_help()
    elif command == "board":
        show_board(engine, " ".join(args) or None)
    elif command == "players":
        show_players(engine)
    elif command == "status":
        show_status(engine, session)
    elif command == "add" and args:
        engine.add_card(" ".join(args))
    elif command == "deck" and args:
        path = Path(" ".join(args)).expanduser()
        if not path.exists():
            console.print(f"[red]No such file: {path}[/red]")
            return
        entries = _parse_deck(path)
        engine.replace_library(entries)
        engine.shuffle_library()
        console.print(f"[green]Library loaded:[/green] {len(entries)} cards")
    elif command == "draw":
        count = int(args[0]) if args else 1
        drawn = [a for a in (engine.draw() for _ in range(count)) if a is not None]
        if len(drawn) < count:
            console.print("[yellow]Library is empty[/yellow]")
    elif command in ("tap", "flip", "remove", "commander") and args:
        card = _find_card(engine, args[0])
        if card is None:
            return
        handlers = {
            "tap": engine.toggle_tap,
            "flip": engine.flip_card,
            "remove": engine.remove_card,
            "commander": engine.set_commander,
        }
        handlers[command](card.id)
    elif command == "zone" and len(args) >= 2:
        card = _find_card(engine, args[0])
        if card is None:
            return
        try:
            zone = Zone(args[1].lower())
            placement = LibraryPlacement(args[2].lower()) if len(args) > 2 else None
        except ValueError:
            console.print("[red]Unknown zone or placement[/red]")
            return
        if zone == Zone.COMMANDER and card.is_commander:
            engine.send_commander(card.id)
        else:
            engine.change_zone(card.id, zone, placement=placement)
    elif command == "shuffle":
        engine.shuffle_library()
    elif command == "mulligan":
        engine.mulligan()
    elif command == "cascade" and args:
        action = engine.cascade(int(args[0]))
        if action is not None and action.payload.hit_card_id:
            console.print(f"[green]Cascaded into[/green] {engine.store.cards[action.payload.hit_card_id].name}")
        else:
            console.print("[yellow]No hit[/yellow]")
    elif command == "reset":
        console.print(f"[yellow]Removed {engine.reset_board()} cards[/yellow]")
    elif command == "life" and args:
        value = args[0]
        if value.startswith("="):
            engine.set_life(int(value[1:]))
        else:
            engine.change_life(int(value))
    elif command == "damage" and len(args) >= 2:
        attacker = engine.store.player_by_name(args[0])
        if attacker is None:
            console.print("[red]Unknown player[/red]")
            return
        engine.adjust_commander_damage(engine.player_id, attacker.id, int(args[1]))
    elif command == "counter":
        if not args:
            engine.create_counter(CounterKind.NUMERAL)
            return
        matches = [c for c in engine.store.counters if c.startswith(args[0])]
        if len(matches) != 1 or len(args) < 2:
            console.print("[red]Usage: counter ID N[/red]")
            return
        engine.modify_counter(matches[0], delta=int(args[1]))
    else:
        console.print("[dim]Unknown command, type 'help'[/dim]")


if __name__ == "__main__":
    app()
