from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Protocol

from db_models import Contact, LinkPrecedence


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_db_time(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


class ContactStore(Protocol):
    """Persistence operations the reconciliation core depends on.

    Every call on one store instance belongs to the same unit of work.
    """

    def find_by_email_or_phone(self, email: Optional[str], phone: Optional[str]) -> List[Contact]: ...

    def find_by_ids_or_linked_ids(self, ids: Iterable[int]) -> List[Contact]: ...

    def create(
        self,
        email: Optional[str],
        phone: Optional[str],
        precedence: LinkPrecedence,
        linked_id: Optional[int] = None,
    ) -> Contact: ...

    def update_precedence(self, contact_id: int, precedence: LinkPrecedence, linked_id: Optional[int]) -> None: ...


class SqliteContactStore:
    def __init__(self, conn, clock: Callable[[], datetime] = utc_now):
        self.conn = conn
        self.clock = clock

    def find_by_email_or_phone(self, email: Optional[str], phone: Optional[str]) -> List[Contact]:
        """Records whose email equals ``email`` or whose phoneNumber equals ``phone``.

        A ``None`` argument binds SQL NULL, and ``column = NULL`` is never
        true, so an absent field matches nothing.
        """
        cursor = self.conn.execute("""
            SELECT * FROM Contact
            WHERE email = ? OR phoneNumber = ?
            ORDER BY createdAt ASC, id ASC
        """, (email, phone))
        return [self._row_to_contact(row) for row in cursor.fetchall()]

    def find_by_ids_or_linked_ids(self, ids: Iterable[int]) -> List[Contact]:
        ids = sorted(set(ids))
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        cursor = self.conn.execute(f"""
            SELECT * FROM Contact
            WHERE id IN ({placeholders}) OR linkedId IN ({placeholders})
            ORDER BY createdAt ASC, id ASC
        """, (*ids, *ids))
        return [self._row_to_contact(row) for row in cursor.fetchall()]

    def create(
        self,
        email: Optional[str],
        phone: Optional[str],
        precedence: LinkPrecedence,
        linked_id: Optional[int] = None,
    ) -> Contact:
        if (precedence == LinkPrecedence.SECONDARY) != (linked_id is not None):
            raise ValueError("linked_id must be set for secondary contacts and only for them")

        now = _to_db_time(self.clock())
        cursor = self.conn.execute("""
            INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (phone, email, linked_id, LinkPrecedence(precedence).value, now, now))

        return Contact(
            id=cursor.lastrowid,
            email=email,
            phoneNumber=phone,
            linkedId=linked_id,
            linkPrecedence=precedence,
            createdAt=now,
            updatedAt=now,
        )

    def update_precedence(self, contact_id: int, precedence: LinkPrecedence, linked_id: Optional[int]) -> None:
        now = _to_db_time(self.clock())
        cursor = self.conn.execute("""
            UPDATE Contact
            SET linkPrecedence = ?, linkedId = ?, updatedAt = ?
            WHERE id = ?
        """, (LinkPrecedence(precedence).value, linked_id, now, contact_id))
        if cursor.rowcount != 1:
            raise LookupError(f"Contact {contact_id} does not exist")

    @staticmethod
    def _row_to_contact(row) -> Contact:
        return Contact(**dict(row))
