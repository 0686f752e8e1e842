from typing import ContextManager, List, Optional, Protocol

from db_models import Contact, LinkPrecedence


class ContactTransaction(Protocol):
    """Contact queries and mutations running inside one serialized transaction.

    Every list comes back ordered by (createdAt, id) ascending and excludes
    soft-deleted contacts.
    """

    def find_by_email_or_phone(self, email: Optional[str], phone: Optional[str]) -> List[Contact]: ...

    def find_cluster(self, primary_id: int) -> List[Contact]: ...

    def find_contact(self, contact_id: int) -> Optional[Contact]: ...

    def create_contact(
        self,
        email: Optional[str],
        phone: Optional[str],
        link_precedence: LinkPrecedence,
        linked_id: Optional[int] = None,
    ) -> Contact: ...

    def convert_to_secondary(self, contact_id: int, new_primary_id: int) -> None: ...

    def repoint_secondaries(self, old_primary_id: int, new_primary_id: int) -> None: ...


class ContactStore(Protocol):
    def init_db(self) -> None: ...

    def transaction(self) -> ContextManager[ContactTransaction]: ...
