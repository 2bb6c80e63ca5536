"""
Pytest configuration file for test suite

Every test gets a fresh in-process MongoDB (mongomock) behind the real
DocumentStore, a notifier that records instead of delivering, and an HTTP
client whose store, identity provider and notifier are overridden.
"""

import sys
from pathlib import Path
from typing import Dict, List, Optional

import mongomock
import pytest
from fastapi.testclient import TestClient

# Modules live at the repository root
root_path = Path(__file__).parent.parent
sys.path.insert(0, str(root_path))

import config  # noqa: E402
from auth import IdentityProvider, UserIdentity  # noqa: E402
from database import DocumentStore  # noqa: E402
from errors import AuthError  # noqa: E402
from notifications import NotificationChannel  # noqa: E402
from schemas import (  # noqa: E402
    Biodata,
    CompletionStatus,
    Connection,
    ConnectionStatus,
    Image,
    Location,
    Preference,
    Settings,
    User,
)


class RecordingNotifier(NotificationChannel):
    def __init__(self):
        super().__init__()
        self.pushes: List[Dict] = []
        self.records: List[Dict] = []

    def notify(self, title, body, *, topics=(), users=(), data=None):
        self.pushes.append({"title": title, "body": body, "topics": list(topics), "users": list(users), "data": data})

    def record(self, to, sender, type, payload):
        self.records.append({"to": to, "from": sender, "type": type, "payload": payload})


class TokenIdentityProvider(IdentityProvider):
    """Accepts tokens of the form 'token-<userId>'."""

    def authenticate(self, token: str) -> UserIdentity:
        if not token.startswith("token-"):
            raise AuthError("Invalid or expired token")
        user_id = token[len("token-"):]
        return UserIdentity(id=user_id, name=f"User {user_id}")


def auth_header(user_id: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer token-{user_id}"}


@pytest.fixture
def mongo_db():
    return mongomock.MongoClient()["matchmaking_test"]


@pytest.fixture
def store(mongo_db):
    return DocumentStore(mongo_db)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def client(store, notifier):
    import main

    main.app.dependency_overrides[main.get_store] = lambda: store
    main.app.dependency_overrides[main.get_identity_provider] = lambda: TokenIdentityProvider()
    main.app.dependency_overrides[main.get_notifier] = lambda: notifier
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()


# -------------------- Seed helpers --------------------

def seed_user(store: DocumentStore, user_id: str, name: Optional[str] = None, **counters) -> dict:
    return store.create(config.USERS_COLLECTION, User(name=name or user_id.title(), **counters), document_id=user_id)


def seed_profile(
    store: DocumentStore,
    user_id: str,
    *,
    name: Optional[str] = None,
    age: int = 30,
    gender: str = "female",
    lat: Optional[float] = 0.0,
    lon: Optional[float] = 0.0,
    hobbies: Optional[List[str]] = None,
    completed: bool = True,
    incognito: bool = False,
    hide_name: bool = False,
    image: Optional[str] = None,
) -> None:
    name = name or user_id.title()
    seed_user(store, user_id, name)
    store.create(
        config.BIODATA_COLLECTION,
        Biodata(user=user_id, name=name, age=age, gender=gender, hobbies=hobbies or []),
    )
    if lat is not None:
        store.create(config.LOCATION_COLLECTION, Location(user=user_id, latitude=lat, longitude=lon))
    store.create(config.COMPLETION_STATUS_COLLECTION, CompletionStatus(user=user_id, is_all_completed=completed))
    if incognito or hide_name:
        store.create(config.SETTINGS_COLLECTION, Settings(user=user_id, is_incognito=incognito, is_hide_name=hide_name))
    if image:
        store.create(config.IMAGES_COLLECTION, Image(user=user_id, image_1=image))


def seed_preference(store: DocumentStore, user_id: str, **fields) -> None:
    store.create(config.PREFERENCE_COLLECTION, Preference(user=user_id, **fields))


def seed_connection(
    store: DocumentStore,
    sender_id: str,
    receiver_id: str,
    status: ConnectionStatus = ConnectionStatus.PENDING,
    **fields,
) -> dict:
    return store.create(
        config.CONNECTIONS_COLLECTION,
        Connection(sender_id=sender_id, receiver_id=receiver_id, status=status, **fields),
    )


def user_doc(store: DocumentStore, user_id: str) -> User:
    return User.model_validate(store.get(config.USERS_COLLECTION, user_id))
