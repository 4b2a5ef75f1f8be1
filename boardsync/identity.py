"""
Local Player Identity

The player id is generated once and kept on disk so that a client which
drops and rejoins a room is recognised as the same player.
"""

import uuid
from pathlib import Path

from boardsync.logging import get_logger

logger = get_logger("identity")


def load_or_create_player_id(data_dir: Path) -> str:
    """Load the stored player id, creating one on first use."""
    data_dir.mkdir(parents=True, exist_ok=True)
    id_file = data_dir / "player_id"
    if id_file.exists():
        player_id = id_file.read_text().strip()
        if player_id:
            return player_id

    player_id = str(uuid.uuid4())
    id_file.write_text(player_id)
    logger.info(f"Created new player ID: {player_id[:8]}...")
    return player_id


def new_entity_id() -> str:
    """Globally unique id for cards and counters."""
    return uuid.uuid4().hex
