"""Shared helpers for boardsync tests."""

import asyncio
import random

import pytest

from boardsync.board.actions import Action, AddCard, PlayerJoined
from boardsync.board.models import Card, Player, Zone
from boardsync.board.store import BoardStore
from boardsync.config import SessionConfig
from boardsync.sync.engine import ReplicationEngine
from boardsync.sync.server import RelayHub
from boardsync.sync.session import SessionManager
from boardsync.sync.transport import MemoryTransport

ROOM = "table-1"
PASSWORD = "hunter2"


def fast_config(**overrides) -> SessionConfig:
    """Session settings with timers short enough for tests."""
    values = {
        "reconnect_attempts": 3,
        "backoff_base": 0.01,
        "backoff_max": 0.02,
        "ack_timeout": 0.02,
        "ack_retries": 50,
        "drag_interval": 0.0,
    }
    values.update(overrides)
    return SessionConfig(**values)


def seat(store: BoardStore, player_id: str, name: str) -> None:
    store.apply(Action(actor_id="host", payload=PlayerJoined(player=Player(id=player_id, name=name))))


def put_card(store: BoardStore, card_id: str, owner_id: str, zone: Zone = Zone.BATTLEFIELD, **fields) -> Card:
    card = Card(id=card_id, owner_id=owner_id, name=fields.pop("name", card_id), zone=zone, **fields)
    store.apply(Action(actor_id=owner_id, payload=AddCard(card=card)))
    return store.cards[card_id]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll the event loop until ``predicate`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.001)


async def settle(rounds: int = 100) -> None:
    """Let queued in-process frames drain."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class Client:
    """An engine plus session talking to an in-process relay."""

    def __init__(
        self,
        hub: RelayHub,
        player_id: str,
        name: str,
        config: SessionConfig | None = None,
        transport_cls=MemoryTransport,
    ):
        self.config = config or fast_config()
        self.engine = ReplicationEngine(player_id, name, self.config, rng=random.Random(player_id))
        self.transports: list[MemoryTransport] = []

        def factory():
            transport = transport_cls(hub)
            self.transports.append(transport)
            return transport

        self.session = SessionManager(self.engine, factory)

    @property
    def transport(self) -> MemoryTransport:
        return self.transports[-1]


async def open_table(hub: RelayHub, *names: str, config: SessionConfig | None = None):
    """Host a room and seat one peer per name."""
    host = Client(hub, "host-id", "Host", config)
    assert await host.session.create_room(ROOM, PASSWORD)
    peers = []
    for i, name in enumerate(names):
        peer = Client(hub, f"peer-{i}", name, config)
        assert await peer.session.join_room(ROOM, PASSWORD)
        assert await peer.session.wait_until_synced(timeout=2.0)
        peers.append(peer)
    await settle()
    return host, peers


@pytest.fixture
def store():
    board = BoardStore(rng=random.Random(42))
    seat(board, "p1", "Alice")
    seat(board, "p2", "Bob")
    return board

