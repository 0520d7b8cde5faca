import datetime
import os

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from config import Settings
from database import build_engine, build_session_factory, init_db
from models import Contact, LinkPrecedence
from resolver import IdentityResolver, KeyedLocks
from store import ContactStore

T0 = datetime.datetime(2024, 1, 1, 12, 0, 0)


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = build_session_factory(engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def store(db):
    return ContactStore(db)


@pytest.fixture
def resolver(store):
    return IdentityResolver(store, locks=KeyedLocks())


@pytest.fixture
def make_contact(db):
    """Insert a contact row directly, bypassing the resolver.

    `minutes` offsets createdAt from a fixed epoch so tests control which
    contact is oldest.
    """

    def _make(email=None, phone=None, linked_to=None, minutes=0, deleted=False, precedence=None):
        if precedence is None:
            precedence = LinkPrecedence.SECONDARY if linked_to is not None else LinkPrecedence.PRIMARY
        created = T0 + datetime.timedelta(minutes=minutes)
        contact = Contact(
            email=email,
            phoneNumber=phone,
            linkedId=linked_to.id if isinstance(linked_to, Contact) else linked_to,
            linkPrecedence=precedence,
            createdAt=created,
            updatedAt=created,
            deletedAt=created if deleted else None,
        )
        db.add(contact)
        db.commit()
        db.refresh(contact)
        return contact

    return _make


@pytest.fixture
def app():
    from main import create_app

    return create_app(Settings(database_url="sqlite://", log_level="WARNING"))


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client
