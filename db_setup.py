import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone

import config
from db_models import Contact, LinkPrecedence
from errors import ConstraintViolation, StorageUnavailable

logger = logging.getLogger(__name__)

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS Contact (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    phoneNumber TEXT,
    email TEXT,
    linkedId INTEGER,
    linkPrecedence TEXT NOT NULL CHECK(linkPrecedence IN ('secondary', 'primary')),
    createdAt TEXT NOT NULL,
    updatedAt TEXT NOT NULL,
    deletedAt TEXT,
    FOREIGN KEY (linkedId) REFERENCES Contact (id),
    CHECK (email IS NOT NULL OR phoneNumber IS NOT NULL),
    CHECK (
        (linkPrecedence = 'primary' AND linkedId IS NULL) OR
        (linkPrecedence = 'secondary' AND linkedId IS NOT NULL)
    )
);
CREATE INDEX IF NOT EXISTS idx_contact_email ON Contact(email);
CREATE INDEX IF NOT EXISTS idx_contact_phoneNumber ON Contact(phoneNumber);
CREATE INDEX IF NOT EXISTS idx_contact_linkedId ON Contact(linkedId);
CREATE INDEX IF NOT EXISTS idx_contact_deletedAt ON Contact(deletedAt);
"""


def _now():
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


@contextmanager
def _translate_errors():
    """Re-raise sqlite3 failures as storage error kinds."""
    try:
        yield
    except sqlite3.IntegrityError as exc:
        logger.warning("Contact write rejected: %s", exc)
        raise ConstraintViolation(str(exc)) from exc
    except sqlite3.Error as exc:
        logger.warning("Contact storage unavailable: %s", exc)
        raise StorageUnavailable(str(exc)) from exc


def get_db_connection(db_path=None, timeout=None):
    """Open an autocommit connection; transactions are issued explicitly."""
    with _translate_errors():
        conn = sqlite3.connect(
            str(db_path or config.DB_PATH),
            timeout=config.DB_TIMEOUT if timeout is None else timeout,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db(db_path=None):
    conn = get_db_connection(db_path)
    try:
        with _translate_errors():
            conn.executescript(_SCHEMA_SQL)
    finally:
        conn.close()
    logger.debug("Contact schema ready at %s", db_path or config.DB_PATH)


class ContactRepository:
    """Contact queries bound to one open connection."""

    def __init__(self, conn):
        self.conn = conn

    def _execute(self, query, params=()):
        with _translate_errors():
            return self.conn.execute(query, params)

    def _fetch_contacts(self, query, params=()):
        return [Contact(**dict(row)) for row in self._execute(query, params).fetchall()]

    def find_by_email_or_phone(self, email=None, phone=None):
        clauses = []
        params = []
        if email:
            clauses.append("email = ?")
            params.append(email)
        if phone:
            clauses.append("phoneNumber = ?")
            params.append(phone)
        if not clauses:
            return []

        match = " OR ".join(clauses)
        query = f"""
            SELECT * FROM Contact
            WHERE deletedAt IS NULL
            AND ({match})
            ORDER BY createdAt ASC, id ASC
        """
        return self._fetch_contacts(query, params)

    def find_cluster(self, primary_id):
        return self._fetch_contacts("""
            SELECT * FROM Contact
            WHERE (id = ? OR linkedId = ?) AND deletedAt IS NULL
            ORDER BY createdAt ASC, id ASC
        """, (primary_id, primary_id))

    def find_contact(self, contact_id):
        row = self._execute(
            "SELECT * FROM Contact WHERE id = ? AND deletedAt IS NULL", (contact_id,)
        ).fetchone()
        return Contact(**dict(row)) if row else None

    def _next_created_at(self):
        """Wall clock, clamped so createdAt never runs behind id order."""
        last = self._execute("SELECT MAX(createdAt) FROM Contact").fetchone()[0]
        now = _now()
        return max(now, last) if last else now

    def create_contact(self, email=None, phone=None, link_precedence=LinkPrecedence.PRIMARY, linked_id=None):
        now = self._next_created_at()
        cursor = self._execute("""
            INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (phone or None, email or None, linked_id, LinkPrecedence(link_precedence).value, now, now))

        contact = self.find_contact(cursor.lastrowid)
        if contact is None:
            raise StorageUnavailable(f"Failed to retrieve created contact {cursor.lastrowid}")
        return contact

    def convert_to_secondary(self, contact_id, new_primary_id):
        self._execute("""
            UPDATE Contact
            SET linkedId = ?, linkPrecedence = 'secondary', updatedAt = ?
            WHERE id = ?
        """, (new_primary_id, _now(), contact_id))

    def repoint_secondaries(self, old_primary_id, new_primary_id):
        self._execute("""
            UPDATE Contact
            SET linkedId = ?, updatedAt = ?
            WHERE linkedId = ?
        """, (new_primary_id, _now(), old_primary_id))

    def all_contacts(self):
        return self._fetch_contacts(
            "SELECT * FROM Contact WHERE deletedAt IS NULL ORDER BY createdAt ASC, id ASC"
        )

    def soft_delete_contact(self, contact_id):
        now = _now()
        self._execute(
            "UPDATE Contact SET deletedAt = ?, updatedAt = ? WHERE id = ?",
            (now, now, contact_id),
        )

    def clear_contacts(self):
        self._execute("DELETE FROM Contact")


class SQLiteContactStore:
    """SQLite-backed contact store.

    Each transaction takes the database write lock up front with
    ``BEGIN IMMEDIATE``, so concurrent identify calls run their
    lookup, decision and writes one at a time. A wait longer than the
    connection timeout surfaces as StorageUnavailable.
    """

    def __init__(self, db_path=None, timeout=None):
        self.db_path = db_path
        self.timeout = timeout

    def init_db(self):
        init_db(self.db_path)

    @contextmanager
    def transaction(self):
        conn = get_db_connection(self.db_path, self.timeout)
        try:
            with _translate_errors():
                conn.execute("BEGIN IMMEDIATE")
            try:
                yield ContactRepository(conn)
            except BaseException:
                if conn.in_transaction:
                    with _translate_errors():
                        conn.execute("ROLLBACK")
                raise
            with _translate_errors():
                conn.execute("COMMIT")
        finally:
            conn.close()
