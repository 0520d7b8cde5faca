"""Identity resolution over the contact store.

A resolution takes one observation (email and/or phone number), walks the
connected component of contacts sharing either value, records whatever the
component does not know yet, collapses multiple primaries into the oldest one
and returns the consolidated view of the component.
"""

import threading
import weakref
from collections import deque
from contextlib import ExitStack, contextmanager, nullcontext
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set

import structlog

from errors import InvariantViolation
from models import Contact, LinkPrecedence
from schemas import ConsolidatedContact
from store import ContactStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Observation:
    email: Optional[str] = None
    phone_number: Optional[str] = None

    def lock_keys(self):
        keys = []
        if self.email:
            keys.append(("email", self.email))
        if self.phone_number:
            keys.append(("phone", self.phone_number))
        return keys


class KeyedLocks:
    """Process-local locks keyed by observed email / phone values.

    Two resolutions sharing a value run one after the other. Locks are dropped
    from the registry once no resolution holds a reference to them.
    """

    def __init__(self):
        self._registry_lock = threading.Lock()
        self._locks = weakref.WeakValueDictionary()

    def _lock_for(self, key):
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def __len__(self):
        return len(self._locks)

    @contextmanager
    def hold(self, keys: Iterable):
        # sorted acquisition order, so overlapping key sets cannot deadlock
        locks = [self._lock_for(key) for key in sorted(set(keys))]
        with ExitStack() as stack:
            for lock in locks:
                stack.enter_context(lock)
            yield


def _unique(values):
    seen = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


class IdentityResolver:
    def __init__(self, store: ContactStore, locks: Optional[KeyedLocks] = None):
        self.store = store
        self.locks = locks

    def resolve(self, observation: Observation) -> ConsolidatedContact:
        guard = self.locks.hold(observation.lock_keys()) if self.locks is not None else nullcontext()
        with guard:
            return self._resolve(observation)

    def _resolve(self, observation: Observation) -> ConsolidatedContact:
        log = logger.bind(email=observation.email, phone_number=observation.phone_number)

        matches = self.store.find_matching(observation.email, observation.phone_number)
        if not matches:
            contact = self.store.create(
                email=observation.email,
                phone_number=observation.phone_number,
                link_precedence=LinkPrecedence.PRIMARY,
            )
            log.info("contact_created", contact_id=contact.id, link_precedence=contact.linkPrecedence.value)
            return self.project([contact])

        component = self.store.find_by_ids(self.collect_component(matches))
        component = self._record_new_facts(observation, component, log)
        component = self._merge_primaries(component, log)

        result = self.project(component)
        log.debug(
            "identity_resolved",
            primary_contact_id=result.primaryContactId,
            secondaries=len(result.secondaryContactIds),
        )
        return result

    def collect_component(self, seeds: List[Contact]) -> Set[int]:
        """Breadth-first walk over the primary/secondary links starting at `seeds`.

        Returns the ids of every reachable, non-deleted contact. Each contact is
        queued at most once.
        """
        queued = set()
        queue = deque()
        for contact in seeds:
            if contact.id not in queued:
                queued.add(contact.id)
                queue.append(contact)

        while queue:
            contact = queue.popleft()
            if contact.is_primary:
                neighbours = self.store.find_children(contact.id)
            elif contact.linkedId is None:
                logger.warning("dangling_link", contact_id=contact.id, linked_id=None)
                neighbours = []
            else:
                neighbours = []
                parent = self.store.find_by_id(contact.linkedId)
                if parent is None:
                    logger.warning("dangling_link", contact_id=contact.id, linked_id=contact.linkedId)
                else:
                    neighbours.append(parent)
                # siblings share the link even when the parent row is gone
                neighbours.extend(self.store.find_children(contact.linkedId))

            for neighbour in neighbours:
                if neighbour.id not in queued:
                    queued.add(neighbour.id)
                    queue.append(neighbour)
        return queued

    def _record_new_facts(self, observation, component, log):
        emails = {c.email for c in component if c.email}
        phone_numbers = {c.phoneNumber for c in component if c.phoneNumber}
        new_email = bool(observation.email) and observation.email not in emails
        new_phone = bool(observation.phone_number) and observation.phone_number not in phone_numbers
        if not (new_email or new_phone) or not component:
            return component

        primary = next((c for c in component if c.is_primary), None)
        if primary is None:
            primary = component[0]
            log.warning("orphan_promoted", contact_id=primary.id, linked_id=primary.linkedId)
            self.store.update(primary.id, linkPrecedence=LinkPrecedence.PRIMARY, linkedId=None)

        # one secondary carries both values, even when both are new
        contact = self.store.create(
            email=observation.email,
            phone_number=observation.phone_number,
            linked_id=primary.id,
            link_precedence=LinkPrecedence.SECONDARY,
        )
        log.info(
            "contact_created",
            contact_id=contact.id,
            link_precedence=contact.linkPrecedence.value,
            linked_id=primary.id,
        )
        return component + [contact]

    def _merge_primaries(self, component, log):
        primaries = [c for c in component if c.is_primary]
        if len(primaries) < 2:
            return component

        survivor = min(primaries, key=lambda c: (c.createdAt, c.id))
        survivor_id = survivor.id
        for contact in primaries:
            if contact.id == survivor_id:
                continue
            demoted_id = contact.id
            self.store.update(demoted_id, linkPrecedence=LinkPrecedence.SECONDARY, linkedId=survivor_id)
            moved = self.store.update_many(demoted_id, survivor_id)
            log.info("primary_demoted", contact_id=demoted_id, primary_contact_id=survivor_id, relinked=moved)

        return self.store.find_family(survivor_id)

    @staticmethod
    def project(component: List[Contact]) -> ConsolidatedContact:
        primary = next((c for c in component if c.is_primary), None)
        if primary is None:
            raise InvariantViolation(
                "resolved component has no primary contact: "
                + ", ".join(str(c.id) for c in component)
            )
        secondaries = [c for c in component if c.linkPrecedence == LinkPrecedence.SECONDARY]
        return ConsolidatedContact(
            primaryContactId=primary.id,
            emails=_unique([primary.email] + [c.email for c in secondaries]),
            phoneNumbers=_unique([primary.phoneNumber] + [c.phoneNumber for c in secondaries]),
            secondaryContactIds=[c.id for c in secondaries],
        )
