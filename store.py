"""SQLAlchemy-backed contact store.

Every read skips soft-deleted rows. Every write commits on its own; there is
no transaction spanning a whole resolution.
"""

from contextlib import contextmanager
from typing import Iterable, List, Optional

import structlog
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import StoreFailure
from models import Contact, LinkPrecedence, utcnow

logger = structlog.get_logger(__name__)

_UPDATABLE = {"linkPrecedence", "linkedId"}


class ContactStore:
    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def _guard(self, operation: str):
        try:
            yield
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("store_operation_failed", operation=operation, error=str(exc))
            raise StoreFailure(f"{operation} failed") from exc

    def _active(self):
        return self.db.query(Contact).filter(Contact.deletedAt.is_(None))

    @staticmethod
    def _ordered(query):
        return query.order_by(Contact.createdAt.asc(), Contact.id.asc())

    def find_matching(self, email: Optional[str] = None, phone_number: Optional[str] = None) -> List[Contact]:
        clauses = []
        if email:
            clauses.append(Contact.email == email)
        if phone_number:
            clauses.append(Contact.phoneNumber == phone_number)
        if not clauses:
            return []
        with self._guard("find_matching"):
            return self._ordered(self._active().filter(or_(*clauses))).all()

    def find_children(self, parent_id: int) -> List[Contact]:
        with self._guard("find_children"):
            return self._ordered(self._active().filter(Contact.linkedId == parent_id)).all()

    def find_by_id(self, contact_id: int) -> Optional[Contact]:
        with self._guard("find_by_id"):
            return self._active().filter(Contact.id == contact_id).one_or_none()

    def find_by_ids(self, contact_ids: Iterable[int]) -> List[Contact]:
        ids = list(contact_ids)
        if not ids:
            return []
        with self._guard("find_by_ids"):
            return self._ordered(self._active().filter(Contact.id.in_(ids))).all()

    def find_family(self, primary_id: int) -> List[Contact]:
        """The primary itself plus every contact linked directly to it."""
        with self._guard("find_family"):
            query = self._active().filter(
                or_(Contact.id == primary_id, Contact.linkedId == primary_id)
            )
            return self._ordered(query).all()

    def create(
        self,
        email: Optional[str] = None,
        phone_number: Optional[str] = None,
        linked_id: Optional[int] = None,
        link_precedence: LinkPrecedence = LinkPrecedence.PRIMARY,
    ) -> Contact:
        contact = Contact(
            email=email,
            phoneNumber=phone_number,
            linkedId=linked_id,
            linkPrecedence=link_precedence,
        )
        with self._guard("create"):
            self.db.add(contact)
            self.db.commit()
            self.db.refresh(contact)
        return contact

    def update(self, contact_id: int, **fields) -> Contact:
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"cannot update contact fields: {sorted(unknown)}")
        with self._guard("update"):
            contact = self.db.get(Contact, contact_id)
            if contact is None:
                raise StoreFailure(f"contact {contact_id} does not exist")
            for name, value in fields.items():
                setattr(contact, name, value)
            contact.updatedAt = utcnow()
            self.db.commit()
            self.db.refresh(contact)
        return contact

    def update_many(self, where_linked_id: int, new_linked_id: int) -> int:
        """Re-point every contact linked to `where_linked_id`. Returns the row count."""
        with self._guard("update_many"):
            count = (
                self.db.query(Contact)
                .filter(Contact.linkedId == where_linked_id)
                .update(
                    {Contact.linkedId: new_linked_id, Contact.updatedAt: utcnow()},
                    synchronize_session=False,
                )
            )
            self.db.commit()
        return count
