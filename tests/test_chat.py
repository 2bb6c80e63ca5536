import random

import pytest

import config
from chat import ChatSession, describe_date
from conftest import seed_connection, seed_user
from connections import load_connection
from database import Query
from errors import Conflict, QuotaExceeded, Unauthorized, ValidationError
from schemas import ConnectionStatus, Message


@pytest.fixture
def chats(store, notifier):
    return ChatSession(store, notifier)


@pytest.fixture
def chat_id(store):
    seed_user(store, "alice", "Alice")
    seed_user(store, "bob", "Bob")
    return seed_connection(store, "alice", "bob", status=ConnectionStatus.CHAT_ACTIVE)["id"]


def messages(store, connection_id):
    return store.list(config.MESSAGES_COLLECTION, [Query.equal("connectionId", connection_id)])


def inbox(store, connection_id):
    return store.get(config.MESSAGES_INBOX_COLLECTION, connection_id)


def test_describe_date():
    assert describe_date("2025-07-04T18:05:00") == "July 4, 2025 at 18:05"
    assert describe_date("2025-07-04") == "July 4, 2025"
    with pytest.raises(ValidationError, match="ISO-8601 date or date-time"):
        describe_date("next friday")


# -------------------- messages --------------------

def test_send_text_message(store, chats, chat_id):
    sent = chats.send_message("alice", chat_id, "Hi Bob!", "text")

    assert sent["message"] == "Hi Bob!"
    assert sent["senderId"] == "alice"
    assert sent["messageType"] == "text"
    assert sent["is_image"] is False
    assert isinstance(sent["timestamp"], int)
    assert load_connection(store, chat_id).message_count == 1
    assert inbox(store, chat_id)["message"] == "Hi Bob!"


def test_send_image_message(store, chats, chat_id):
    sent = chats.send_message("bob", chat_id, "https://img/cat.jpg", "image")

    assert sent["message"] == "[Image]"
    assert sent["is_image"] is True
    assert sent["imageUrl"] == "https://img/cat.jpg"
    assert inbox(store, chat_id)["imageUrl"] == "https://img/cat.jpg"


def test_inbox_tracks_latest_message(store, chats, chat_id):
    chats.send_message("alice", chat_id, "one", "text")
    chats.send_message("bob", chat_id, "two", "text")

    assert len(store.list(config.MESSAGES_INBOX_COLLECTION)) == 1
    latest = inbox(store, chat_id)
    assert (latest["message"], latest["senderId"]) == ("two", "bob")


@pytest.mark.parametrize("content,message_type", [("", "text"), ("hi", None), ("hi", "video")])
def test_invalid_message(chats, chat_id, content, message_type):
    with pytest.raises(ValidationError):
        chats.send_message("alice", chat_id, content, message_type)


def test_outsider_cannot_send(store, chats, chat_id):
    with pytest.raises(Unauthorized):
        chats.send_message("mallory", chat_id, "hello", "text")
    assert messages(store, chat_id) == []


def test_cannot_send_to_inactive_chat(store, chats):
    connection_id = seed_connection(store, "alice", "bob")["id"]
    with pytest.raises(Unauthorized):
        chats.send_message("alice", connection_id, "hello", "text")


def test_message_budget(store, chats, chat_id):
    store.update(config.CONNECTIONS_COLLECTION, chat_id, {"messageCount": config.MESSAGE_LIMIT - 1})

    chats.send_message("alice", chat_id, "last one", "text")
    with pytest.raises(QuotaExceeded, match="Message limit reached for this chat."):
        chats.send_message("bob", chat_id, "one too many", "text")
    with pytest.raises(QuotaExceeded):
        chats.propose_date("bob", chat_id, "2025-07-24T18:47:00", "Cafe")

    assert load_connection(store, chat_id).message_count == config.MESSAGE_LIMIT
    assert len(messages(store, chat_id)) == 1


def test_chat_messages_in_order(store, chats, chat_id):
    for text in ("a", "b", "c"):
        chats.send_message("alice", chat_id, text, "text")
    assert [m["message"] for m in chats.chat_messages(chat_id)] == ["a", "b", "c"]


def test_chat_history_is_sorted_and_capped(store, chats, chat_id):
    timestamps = list(range(1_000, 1_000 + config.CHAT_HISTORY_LIMIT + 50))
    random.Random(3).shuffle(timestamps)
    for ts in timestamps:
        store.create(
            config.MESSAGES_COLLECTION,
            Message(connection_id=chat_id, sender_id="alice", message_type="text", message=str(ts), timestamp=ts),
        )
    store.create(
        config.MESSAGES_COLLECTION,
        Message(connection_id="other", sender_id="alice", message_type="text", message="elsewhere", timestamp=1),
    )

    history = chats.chat_messages(chat_id)

    assert len(history) == config.CHAT_HISTORY_LIMIT
    assert [m["timestamp"] for m in history] == list(range(1_000, 1_000 + config.CHAT_HISTORY_LIMIT))


# -------------------- date proposals --------------------

def test_propose_date(store, chats, chat_id):
    connection = chats.propose_date("alice", chat_id, "2025-07-24T18:47:00", "Blue Tokai")

    assert connection["dateProposalStatus"] == "proposed"
    assert connection["dateProposalProposerId"] == "alice"
    assert connection["dateProposalLastActionBy"] == "alice"
    assert connection["messageCount"] == 1
    message, = messages(store, chat_id)
    assert message["messageType"] == "date_proposal"
    assert message["message"] == "Proposed a date for July 24, 2025 at 18:47 at Blue Tokai."


def test_propose_requires_details(chats, chat_id):
    with pytest.raises(ValidationError):
        chats.propose_date("alice", chat_id, "", "Cafe")
    with pytest.raises(ValidationError):
        chats.propose_date("alice", chat_id, "next friday", "Cafe")


def test_only_one_proposal_in_flight(store, chats, chat_id):
    chats.propose_date("alice", chat_id, "2025-07-24T18:47:00", "Cafe")
    with pytest.raises(Conflict):
        chats.propose_date("bob", chat_id, "2025-07-25T18:47:00", "Park")
    assert load_connection(store, chat_id).message_count == 1


def test_no_self_response(store, chats, chat_id):
    chats.propose_date("alice", chat_id, "2025-07-24T18:47:00", "Cafe")
    with pytest.raises(Conflict):
        chats.respond_to_date_proposal("alice", chat_id, "accept")
    assert load_connection(store, chat_id).date_proposal_status == "proposed"


def test_respond_without_proposal(chats, chat_id):
    with pytest.raises(ValidationError, match="No active proposal"):
        chats.respond_to_date_proposal("bob", chat_id, "accept")


def test_invalid_response_type(chats, chat_id):
    with pytest.raises(ValidationError):
        chats.respond_to_date_proposal("bob", chat_id, "maybe")


def test_accept_proposal(store, chats, notifier, chat_id):
    chats.propose_date("alice", chat_id, "2025-07-24T18:47:00", "Cafe")

    connection = chats.respond_to_date_proposal("bob", chat_id, "accept")

    assert connection["dateProposalStatus"] == "accepted"
    assert connection["dateProposalLastActionBy"] == "bob"
    assert connection["dateProposalPlace"] == "Cafe"
    assert connection["messageCount"] == 2
    assert messages(store, chat_id)[-1]["messageType"] == "date_response"
    assert sorted(notifier.pushes[-1]["users"]) == ["alice", "bob"]


def test_reject_proposal_clears_details(chats, chat_id):
    chats.propose_date("alice", chat_id, "2025-07-24T18:47:00", "Cafe")

    connection = chats.respond_to_date_proposal("bob", chat_id, "reject")

    assert connection["dateProposalStatus"] == "rejected"
    assert connection["dateProposalDate"] is None
    assert connection["dateProposalPlace"] is None
    assert connection["dateProposalProposerId"] is None

    again = chats.propose_date("bob", chat_id, "2025-08-01T19:00:00", "Park")
    assert again["dateProposalProposerId"] == "bob"


def test_modify_then_counter_accept(store, chats, chat_id):
    chats.propose_date("alice", chat_id, "2025-07-24T18:47:00", "Cafe")

    modified = chats.respond_to_date_proposal(
        "bob", chat_id, "modify", {"date": "2025-07-26T20:00:00", "place": "Park"}
    )

    assert modified["dateProposalStatus"] == "modified"
    assert modified["dateProposalProposerId"] == "alice"
    assert modified["dateProposalLastActionBy"] == "bob"
    assert modified["dateProposalPlace"] == "Park"
    assert messages(store, chat_id)[-1]["message"] == "Modified the date proposal to July 26, 2025 at 20:00 at Park."

    with pytest.raises(Conflict):
        chats.respond_to_date_proposal("bob", chat_id, "accept")
    accepted = chats.respond_to_date_proposal("alice", chat_id, "accept")
    assert accepted["dateProposalStatus"] == "accepted"


def test_modify_requires_details(chats, chat_id):
    chats.propose_date("alice", chat_id, "2025-07-24T18:47:00", "Cafe")
    with pytest.raises(ValidationError, match="New date and place are required"):
        chats.respond_to_date_proposal("bob", chat_id, "modify", {"date": "2025-07-26T20:00:00"})


def test_response_respects_budget(store, chats, chat_id):
    chats.propose_date("alice", chat_id, "2025-07-24T18:47:00", "Cafe")
    store.update(config.CONNECTIONS_COLLECTION, chat_id, {"messageCount": config.MESSAGE_LIMIT})

    with pytest.raises(QuotaExceeded):
        chats.respond_to_date_proposal("bob", chat_id, "accept")
    assert load_connection(store, chat_id).date_proposal_status == "proposed"


# -------------------- listings --------------------

def test_active_chats(store, chats, chat_id):
    seed_connection(store, "carol", "alice", status=ConnectionStatus.CHAT_ACTIVE)
    store.create(config.IMAGES_COLLECTION, {"user": "bob", "image_1": "https://img/bob.jpg"})

    listed = chats.active_chats("alice")

    # carol has no user document and is skipped
    assert listed == [{
        "connectionId": chat_id,
        "partnerId": "bob",
        "partnerName": "Bob",
        "partnerPhotoUrl": "https://img/bob.jpg",
        "messageCount": 0,
        "dateProposalStatus": "none",
    }]
    assert [c["partnerId"] for c in chats.active_chats("bob")] == ["alice"]


def test_chat_state_hides_rejected_details(chats, chat_id):
    chats.propose_date("alice", chat_id, "2025-07-24T18:47:00", "Cafe")
    state = chats.chat_state("bob", chat_id)
    assert state["currentDateProposalStatus"] == "proposed"
    assert state["dateProposalPlace"] == "Cafe"
    assert state["partnerName"] == "Alice"

    chats.respond_to_date_proposal("bob", chat_id, "reject")
    state = chats.chat_state("alice", chat_id)
    assert state["currentDateProposalStatus"] == "rejected"
    assert state["dateProposalDate"] is None
    assert state["currentMessageCount"] == 2


def test_propose_date_without_time(store, chats, chat_id):
    connection = chats.propose_date("alice", chat_id, "2025-07-24", "Lalbagh")

    assert connection["dateProposalDate"] == "2025-07-24"
    assert messages(store, chat_id)[-1]["message"] == "Proposed a date for July 24, 2025 at Lalbagh."


def test_unparseable_date_writes_nothing(store, chats, chat_id):
    with pytest.raises(ValidationError, match="ISO-8601"):
        chats.propose_date("alice", chat_id, "24/07/2025 evening", "Cafe")
    assert messages(store, chat_id) == []
    assert load_connection(store, chat_id).message_count == 0
