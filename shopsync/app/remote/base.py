from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

# PostgREST reports a missing relation as PGRST205; Postgres itself as SQLSTATE 42P01.
RELATION_MISSING_CODES = frozenset({"PGRST205", "42P01"})


class RemoteError(Exception):
    def __init__(self, message: str, *, code: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status

    def __str__(self) -> str:
        bits = [self.message]
        if self.code:
            bits.append(f"code={self.code}")
        if self.status:
            bits.append(f"status={self.status}")
        return " ".join(bits)


class SchemaNotReadyError(RemoteError):
    """The remote relation does not exist (yet): empty on pull, abort on push."""


def is_relation_missing(code: Optional[str], message: Optional[str]) -> bool:
    if code and str(code) in RELATION_MISSING_CODES:
        return True
    return "Could not find the table" in str(message or "")


class RemoteBackend(ABC):
    """Fixed relational API the sync engine talks to. Tables are keyed by `id`."""

    @abstractmethod
    async def select_all(self, table: str) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def insert(self, table: str, row: dict[str, Any]) -> None:
        """Upsert by primary key so a retried insert is harmless."""

    @abstractmethod
    async def update_by_id(self, table: str, record_id: str, fields: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def delete_by_id(self, table: str, record_id: str) -> None:
        ...

    @abstractmethod
    async def delete_by_ids(self, table: str, record_ids: Iterable[str]) -> None:
        ...

    @abstractmethod
    async def probe(self, table: str) -> None:
        """Cheap reachability + schema check; raises SchemaNotReadyError or RemoteError."""

    async def aclose(self) -> None:
        return None
