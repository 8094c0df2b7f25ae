"""Store-layer exceptions.

Persistence backends raise these; the state machine and ledger translate
them into ``Err`` results at their boundary.
"""

from __future__ import annotations


class StoreError(Exception):
    """The persistence layer could not complete a read or write."""


class DuplicateKeyError(StoreError):
    """An insert was rejected by a unique constraint.

    Raised when two deliveries race past the existence check and the second
    insert hits the unique index on the external id.
    """

    def __init__(self, table: str, key: str) -> None:
        super().__init__(f"duplicate key in {table}: {key}")
        self.table = table
        self.key = key
