"""Identity reconciliation over linked contact records.

A request carrying an email and/or phone number is matched against the
stored contacts. Depending on how many distinct primary contacts the
matches lead to, the engine creates a new primary, attaches a secondary to
an existing primary, or merges several clusters under the oldest primary.
The result is projected into the ``FinalResponse`` served by ``/identify``.
"""

import logging

from db_models import ContactGroup, ContactResponse, FinalResponse, LinkPrecedence
from errors import InvariantViolation
from storage import ContactStore

logger = logging.getLogger(__name__)


class ReconciliationEngine:

    def __init__(self, store: ContactStore):
        self.store = store

    def identify(self, email: str = None, phone: str = None) -> FinalResponse:
        email = email or None
        phone = phone or None

        with self.store.transaction() as tx:
            existing_contacts = tx.find_by_email_or_phone(email, phone)

            if not existing_contacts:
                contact = tx.create_contact(email, phone, LinkPrecedence.PRIMARY)
                logger.info("Created primary contact %s", contact.id)
                return FinalResponse(
                    contact=ContactResponse(
                        primaryContactId=contact.id,
                        emails=[email] if email else [],
                        phoneNumbers=[phone] if phone else [],
                        secondaryContactIds=[]
                    )
                )

            primary_contacts = resolve_primaries(tx, existing_contacts)

            if len(primary_contacts) == 1:
                primary_contact = primary_contacts[0]
                if needs_secondary_contact(primary_contact, email, phone):
                    contact = tx.create_contact(email, phone, LinkPrecedence.SECONDARY, primary_contact.id)
                    logger.info("Attached secondary contact %s to primary %s", contact.id, primary_contact.id)
                else:
                    logger.debug("Duplicate observation for primary %s", primary_contact.id)
                return build_response(tx, primary_contact.id)

            return merge_primaries(tx, primary_contacts, email, phone)

    def get_contact_group(self, primary_id: int):
        with self.store.transaction() as tx:
            return contact_group(tx, primary_id)


def resolve_primaries(tx, contacts):
    """Return the distinct primaries reachable from ``contacts``, oldest first.

    Secondaries are dereferenced one hop through ``linkedId``; the match set
    is consulted first and storage only for primaries outside it.
    """
    by_id = {c.id: c for c in contacts}
    primaries = {}

    for contact in contacts:
        if contact.is_primary:
            primaries[contact.id] = contact
            continue

        if contact.linkedId is None:
            raise InvariantViolation(f"Secondary contact {contact.id} has no linkedId", contact.id)
        if contact.linkedId in primaries:
            continue

        primary = by_id.get(contact.linkedId) or tx.find_contact(contact.linkedId)
        if primary is None:
            raise InvariantViolation(
                f"Contact {contact.id} links to missing contact {contact.linkedId}", contact.id
            )
        if not primary.is_primary:
            raise InvariantViolation(
                f"Contact {contact.id} links to non-primary contact {primary.id}", contact.id
            )
        primaries[primary.id] = primary

    return sorted(primaries.values(), key=lambda c: c.sort_key)


def needs_secondary_contact(primary_contact, email=None, phone=None):
    # Only the primary's own fields are compared, not its secondaries'.
    has_new_email = bool(email) and primary_contact.email != email
    has_new_phone = bool(phone) and primary_contact.phoneNumber != phone
    return has_new_email or has_new_phone


def has_new_information(contacts, email=None, phone=None):
    existing_emails = {c.email for c in contacts if c.email}
    existing_phones = {c.phoneNumber for c in contacts if c.phoneNumber}
    return bool(
        (email and email not in existing_emails) or
        (phone and phone not in existing_phones)
    )


def merge_primaries(tx, primary_contacts, email=None, phone=None):
    """Fold every cluster into the one headed by the oldest primary."""
    oldest = primary_contacts[0]

    for contact in primary_contacts[1:]:
        tx.convert_to_secondary(contact.id, oldest.id)
        tx.repoint_secondaries(contact.id, oldest.id)
        logger.info("Merged primary contact %s into %s", contact.id, oldest.id)

    if has_new_information(tx.find_cluster(oldest.id), email, phone):
        contact = tx.create_contact(email, phone, LinkPrecedence.SECONDARY, oldest.id)
        logger.info("Attached secondary contact %s to merged primary %s", contact.id, oldest.id)

    return build_response(tx, oldest.id)


def _split_cluster(tx, primary_id):
    all_contacts = tx.find_cluster(primary_id)

    primary_contact = next((c for c in all_contacts if c.is_primary and c.id == primary_id), None)
    secondary_contacts = [c for c in all_contacts if not c.is_primary]
    return primary_contact, secondary_contacts


def build_response(tx, primary_id):
    primary_contact, secondary_contacts = _split_cluster(tx, primary_id)
    if primary_contact is None:
        raise InvariantViolation(f"Primary contact {primary_id} not found", primary_id)

    emails = []
    phone_numbers = []

    for contact in [primary_contact] + secondary_contacts:
        if contact.email and contact.email not in emails:
            emails.append(contact.email)
        if contact.phoneNumber and contact.phoneNumber not in phone_numbers:
            phone_numbers.append(contact.phoneNumber)

    return FinalResponse(
        contact=ContactResponse(
            primaryContactId=primary_id,
            emails=emails,
            phoneNumbers=phone_numbers,
            secondaryContactIds=[c.id for c in secondary_contacts]
        )
    )


def contact_group(tx, primary_id):
    primary_contact, secondary_contacts = _split_cluster(tx, primary_id)
    if primary_contact is None:
        return None

    response = build_response(tx, primary_id).contact
    return ContactGroup(
        primaryContact=primary_contact,
        secondaryContacts=secondary_contacts,
        allEmails=response.emails,
        allPhoneNumbers=response.phoneNumbers,
    )
