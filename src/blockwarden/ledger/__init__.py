"""Ledger package: append-only protection history.

Public surface
--------------
- :class:`HistoryLedger`: records, closes and queries history entries.

Usage example
-------------
::

    from blockwarden.ledger import HistoryLedger

    ledger = HistoryLedger(db, registry)
    ledger.record(protection.id, actor, (protection.x, protection.y, protection.z),
                  metadata=["creator=alice"])
    for entry in ledger.by_protection(protection.id):
        print(entry.type.name, entry.metadata)
"""

from blockwarden.ledger.history import DEFAULT_PAGE_SIZE, HistoryLedger

__all__ = [
    "DEFAULT_PAGE_SIZE",
    "HistoryLedger",
]
