"""Row builders shared by the migration and repository tests."""

from tests.constants import WORLD


def legacy_protection(
    protection_id: int,
    owner: str,
    x: int,
    y: int = 64,
    z: int = 0,
    *,
    world: str = WORLD,
    kind: int = 2,
    data: str | None = None,
    block_id: int = 54,
) -> tuple:
    """Row tuple for the ``legacy_db(protections=...)`` fixture."""
    return (
        protection_id,
        owner,
        kind,
        x,
        y,
        z,
        data,
        block_id,
        world,
        None,
        "2013-05-01 12:00:00.000",
        1367409600,
    )


def legacy_history(
    history_id: int,
    protection_id: int,
    player: str,
    x: int,
    y: int = 64,
    z: int = 0,
    *,
    metadata: str = "",
    timestamp: int = 1367409600,
) -> tuple:
    """Row tuple for the ``legacy_db(history=...)`` fixture."""
    return (history_id, protection_id, player, x, y, z, 0, 0, metadata, timestamp)
