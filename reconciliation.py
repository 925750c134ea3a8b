"""Identity reconciliation over contact records.

A request's email/phone pair is matched against stored contacts, every
component it touches is merged under the oldest primary, and at most one
new record is written to represent whatever the request added.
"""

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from db_models import Contact, ContactResponse, LinkPrecedence
from errors import IntegrityViolation, InvalidRequest

logger = logging.getLogger(__name__)


def creation_order(contact: Contact):
    return (contact.createdAt, contact.id)


class OrderedSet:
    """Append-if-absent collection that remembers first-seen order."""

    def __init__(self, values: Iterable = ()):
        self._positions: Dict[object, int] = {}
        for value in values:
            self.add(value)

    def add(self, value) -> bool:
        if value is None or value in self._positions:
            return False
        self._positions[value] = len(self._positions)
        return True

    def __contains__(self, value) -> bool:
        return value in self._positions

    def __iter__(self):
        return iter(sorted(self._positions, key=self._positions.__getitem__))

    def __len__(self) -> int:
        return len(self._positions)

    def to_list(self) -> list:
        return list(self)


def resolve_candidates(store, email: Optional[str], phone: Optional[str]) -> List[Contact]:
    seeds = store.find_by_email_or_phone(email, phone)
    if not seeds:
        return []

    owner_ids = set()
    for contact in seeds:
        owner_ids.add(contact.id)
        if contact.linkedId is not None:
            owner_ids.add(contact.linkedId)

    members = {contact.id: contact for contact in store.find_by_ids_or_linked_ids(owner_ids)}
    return sorted(members.values(), key=creation_order)


def reconcile(store, candidates: List[Contact]) -> Tuple[Optional[int], List[Contact]]:
    """Pick the canonical primary of ``candidates`` and demote the rest.

    Demotions, and the relinking of secondaries that pointed at a demoted
    primary, are written through ``store`` and applied to ``candidates`` in
    place. Returns the canonical id and the demoted former primaries.

    A secondary linked to anything other than one of the component's
    primaries raises ``IntegrityViolation`` before anything is written.
    """
    if not candidates:
        return None, []

    primaries = [c for c in candidates if c.is_primary]
    if not primaries:
        raise IntegrityViolation(
            f"Component {sorted(c.id for c in candidates)} has no primary contact"
        )

    canonical = min(primaries, key=creation_order)
    demotions = sorted((c for c in primaries if c.id != canonical.id), key=creation_order)
    demoted_ids = {c.id for c in demotions}

    relinks = []
    for contact in sorted(candidates, key=creation_order):
        if contact.is_primary or contact.linkedId == canonical.id:
            continue
        if contact.linkedId not in demoted_ids:
            raise IntegrityViolation(
                f"Contact {contact.id} links to {contact.linkedId}, which is not a primary of its component"
            )
        relinks.append(contact)

    for contact in demotions:
        logger.info("Demoting contact %s to secondary of %s", contact.id, canonical.id)
        _link_to(store, contact, canonical.id)
    for contact in relinks:
        logger.info("Relinking contact %s from %s to %s", contact.id, contact.linkedId, canonical.id)
        _link_to(store, contact, canonical.id)

    return canonical.id, demotions


def _link_to(store, contact: Contact, primary_id: int):
    store.update_precedence(contact.id, LinkPrecedence.SECONDARY, primary_id)
    contact.linkPrecedence = LinkPrecedence.SECONDARY
    contact.linkedId = primary_id


def create_representative(store, email: Optional[str], phone: Optional[str]) -> Contact:
    contact = store.create(email, phone, LinkPrecedence.PRIMARY)
    logger.info("Created primary contact %s", contact.id)
    return contact


def merge_if_needed(
    store,
    email: Optional[str],
    phone: Optional[str],
    primary_id: Optional[int],
    candidates: List[Contact],
) -> Optional[Contact]:
    if not candidates:
        return create_representative(store, email, phone)

    has_exact = any(
        (email is None or c.email == email) and (phone is None or c.phoneNumber == phone)
        for c in candidates
    )
    if has_exact:
        return None

    contact = store.create(email, phone, LinkPrecedence.SECONDARY, primary_id)
    logger.info("Created secondary contact %s linked to %s", contact.id, primary_id)
    return contact


def check_integrity(primary_id: int, members: List[Contact]):
    by_id = {c.id: c for c in members}
    primaries = [c.id for c in members if c.is_primary]
    if primaries != [primary_id]:
        raise IntegrityViolation(
            f"Expected {primary_id} as the only primary, found {sorted(primaries)}"
        )
    for contact in members:
        if contact.is_primary:
            continue
        target = by_id.get(contact.linkedId)
        if target is None or not target.is_primary:
            raise IntegrityViolation(
                f"Contact {contact.id} links to {contact.linkedId}, which is not the component primary"
            )


def assemble_view(primary_id: int, members: List[Contact]) -> ContactResponse:
    ordered = sorted(members, key=creation_order)
    primary = next(c for c in ordered if c.id == primary_id)

    emails = OrderedSet([primary.email])
    phone_numbers = OrderedSet([primary.phoneNumber])
    secondary_ids = []
    for contact in ordered:
        emails.add(contact.email)
        phone_numbers.add(contact.phoneNumber)
        if contact.id != primary_id:
            secondary_ids.append(contact.id)

    return ContactResponse(
        primaryContactId=primary_id,
        emails=emails.to_list(),
        phoneNumbers=phone_numbers.to_list(),
        secondaryContactIds=secondary_ids,
    )


def validate_identity(email: Optional[str], phone: Optional[str]):
    if not email and not phone:
        raise InvalidRequest("Either email or phoneNumber must be provided")


def identify(store, email: Optional[str], phone: Optional[str]) -> ContactResponse:
    """Run one reconciliation against ``store``.

    The caller owns the transaction; see ``identify_contact``.
    """
    validate_identity(email, phone)
    email = email or None
    phone = phone or None

    candidates = resolve_candidates(store, email, phone)
    primary_id, _ = reconcile(store, candidates)

    created = merge_if_needed(store, email, phone, primary_id, candidates)
    members = list(candidates)
    if created is not None:
        members.append(created)
        if primary_id is None:
            primary_id = created.id

    check_integrity(primary_id, members)
    return assemble_view(primary_id, members)


def identify_contact(guard, email: Optional[str], phone: Optional[str]) -> ContactResponse:
    validate_identity(email, phone)
    return guard.run(lambda store: identify(store, email, phone))
