import itertools
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone

from db_models import Contact, LinkPrecedence
from errors import ConstraintViolation

logger = logging.getLogger(__name__)


def _now():
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class MemoryContactStore:
    """Contact arena keyed by id, for tests and embedding.

    A single lock is held for the whole transaction. Contacts are replaced,
    never mutated in place, so a shallow copy of the arena is enough to roll
    back a failed transaction.
    """

    def __init__(self):
        self._contacts = {}
        self._ids = itertools.count(1)
        self._last_created = ""
        self._lock = threading.RLock()

    def init_db(self):
        """Nothing to create; the arena lives in memory."""

    @contextmanager
    def transaction(self):
        with self._lock:
            snapshot = dict(self._contacts)
            try:
                yield self
            except BaseException:
                self._contacts = snapshot
                raise

    def _live(self):
        return sorted(
            (c for c in self._contacts.values() if c.deletedAt is None),
            key=lambda c: c.sort_key,
        )

    def find_by_email_or_phone(self, email=None, phone=None):
        if not email and not phone:
            return []
        return [
            c for c in self._live()
            if (email and c.email == email) or (phone and c.phoneNumber == phone)
        ]

    def find_cluster(self, primary_id):
        return [c for c in self._live() if c.id == primary_id or c.linkedId == primary_id]

    def find_contact(self, contact_id):
        contact = self._contacts.get(contact_id)
        if contact is None or contact.deletedAt is not None:
            return None
        return contact

    def create_contact(self, email=None, phone=None, link_precedence=LinkPrecedence.PRIMARY, linked_id=None):
        link_precedence = LinkPrecedence(link_precedence)
        if not email and not phone:
            raise ConstraintViolation("contact needs an email or a phoneNumber")
        if (link_precedence == LinkPrecedence.SECONDARY) != (linked_id is not None):
            raise ConstraintViolation("linkedId must be set exactly for secondary contacts")
        if linked_id is not None and linked_id not in self._contacts:
            raise ConstraintViolation(f"linkedId {linked_id} does not reference a contact")

        # createdAt never runs behind id order, even if the clock steps back
        now = max(_now(), self._last_created)
        self._last_created = now
        contact = Contact(
            id=next(self._ids),
            email=email or None,
            phoneNumber=phone or None,
            linkedId=linked_id,
            linkPrecedence=link_precedence,
            createdAt=now,
            updatedAt=now,
        )
        self._contacts[contact.id] = contact
        return contact

    def _update(self, contact_id, **changes):
        contact = self._contacts[contact_id]
        self._contacts[contact_id] = contact.model_copy(update=dict(changes, updatedAt=_now()))

    def convert_to_secondary(self, contact_id, new_primary_id):
        if contact_id in self._contacts:
            self._update(contact_id, linkedId=new_primary_id, linkPrecedence=LinkPrecedence.SECONDARY)

    def repoint_secondaries(self, old_primary_id, new_primary_id):
        for contact_id in [c.id for c in self._contacts.values() if c.linkedId == old_primary_id]:
            self._update(contact_id, linkedId=new_primary_id)

    def all_contacts(self):
        return self._live()

    def soft_delete_contact(self, contact_id):
        if contact_id in self._contacts:
            now = _now()
            self._update(contact_id, deletedAt=now)

    def clear_contacts(self):
        self._contacts.clear()
