"""
Connection lifecycle

    pending -> declined | cancelled | chat_active
    chat_active -> chat_removed_by_sender | chat_removed_by_receiver

Each transition is a compare-and-set on the stored status followed by counter
maintenance on both users and HasShown bookkeeping. Counters move through
atomic increments, and decrements never take a counter below zero. A later
invitation between the same pair always creates a new Connection.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

import config
from database import DocumentStore, Query
from errors import NotFound, QuotaExceeded, Unauthorized, ValidationError
from notifications import NotificationChannel
from schemas import Connection, ConnectionStatus, DateProposalStatus, User

logger = logging.getLogger(__name__)

SENT_COUNT = "activeSentInvitationCount"
RECEIVED_COUNT = "activeReceivedInvitationCount"
CHAT_COUNT = "activeChatCount"


def load_connection(store: DocumentStore, connection_id: str) -> Optional[Connection]:
    doc = store.get(config.CONNECTIONS_COLLECTION, connection_id)
    return Connection.model_validate(doc) if doc else None


def party_details(store: DocumentStore, user_ids: Iterable[str]) -> Tuple[Dict[str, User], Dict[str, Optional[str]]]:
    """Users by id and their primary image (image_1), fetched in bulk."""
    user_ids = sorted(set(user_ids))
    users = {
        doc["id"]: User.model_validate(doc)
        for doc in store.list(config.USERS_COLLECTION, [Query.equal("id", user_ids), Query.limit(len(user_ids))])
    }
    images = {
        doc["user"]: doc.get("image_1") or None
        for doc in store.list(config.IMAGES_COLLECTION, [Query.equal("user", user_ids), Query.limit(len(user_ids))])
        if doc.get("user")
    }
    return users, images


class ConnectionManager:
    def __init__(self, store: DocumentStore, notifier: Optional[NotificationChannel] = None):
        self.store = store
        self.notifier = notifier or NotificationChannel()

    # -------------------- Invitations --------------------

    def send_invitation(self, sender_id: str, receiver_id: str) -> Dict[str, Any]:
        """
        Create a pending Connection from sender to receiver.

        The sender's quota is a hard limit. The receiver's is soft: past it the
        Connection still exists but is not surfaced to the receiver (no
        HasShown row, no notification) and visibleToReceiver is False.
        """
        if sender_id == receiver_id:
            raise ValidationError("Cannot invite yourself")
        sender = self._user(sender_id, "Sender not found")
        self._user(receiver_id, "Receiver not found")

        if sender.active_sent_invitation_count >= config.MAX_ACTIVE_SENT_INVITATIONS:
            raise QuotaExceeded("Max active sent invitations reached")

        connection = self.store.create(
            config.CONNECTIONS_COLLECTION,
            Connection(sender_id=sender_id, receiver_id=receiver_id),
        )
        self._adjust(sender_id, SENT_COUNT, 1)

        visible = self.store.increment(
            config.USERS_COLLECTION,
            receiver_id,
            RECEIVED_COUNT,
            1,
            below=config.MAX_ACTIVE_RECEIVED_INVITATIONS,
        )
        if visible:
            self.store.upsert(
                config.HAS_SHOWN_COLLECTION,
                [Query.equal("user", receiver_id), Query.equal("who", sender_id)],
                data={"is_ignore": False, "is_interested": True},
            )
            sender_name = sender.name or "Someone"
            self.notifier.notify(
                "New Invitation!",
                f"{sender_name} has sent you an invitation!💖",
                topics=[config.PUSH_TOPIC],
                data={
                    "type": "new_invitation",
                    "senderId": sender_id,
                    "senderName": sender_name,
                    "receiverId": receiver_id,
                },
            )
            self.notifier.record(receiver_id, sender_id, "invite", "You have an invitation.")
        else:
            logger.info("Receiver %s is at the invitation limit; invitation kept hidden", receiver_id)

        logger.info("Invitation %s sent from %s to %s", connection["id"], sender_id, receiver_id)
        return {"success": True, "visibleToReceiver": visible, "connectionId": connection["id"]}

    def active_sent_invitations(self, sender_id: str) -> List[Dict[str, Any]]:
        connections = self._connections([
            Query.equal("senderId", sender_id),
            Query.equal("status", ConnectionStatus.PENDING.value),
            Query.order_asc("created_at"),
        ])
        users, images = party_details(self.store, [c.receiver_id for c in connections])
        return [
            {
                "connectionId": c.id,
                "receiverId": c.receiver_id,
                "name": _name(users.get(c.receiver_id)),
                "primaryImage": images.get(c.receiver_id),
                "status": c.status,
            }
            for c in connections
        ]

    def active_received_invitations(self, receiver_id: str) -> List[Dict[str, Any]]:
        connections = self._connections([
            Query.equal("receiverId", receiver_id),
            Query.equal("status", ConnectionStatus.PENDING.value),
            Query.order_asc("created_at"),
            Query.limit(config.MAX_ACTIVE_RECEIVED_INVITATIONS),
        ])
        users, images = party_details(self.store, [c.sender_id for c in connections])
        return [
            {
                "connectionId": c.id,
                "senderId": c.sender_id,
                "name": _name(users.get(c.sender_id)),
                "primaryImage": images.get(c.sender_id),
                "status": c.status,
            }
            for c in connections
        ]

    def remove_sent_invitation(self, sender_id: str, connection_id: str) -> Dict[str, Any]:
        error = "Unauthorized or invalid connection"
        connection = load_connection(self.store, connection_id)
        if connection is None or connection.status != ConnectionStatus.PENDING or connection.sender_id != sender_id:
            raise Unauthorized(error)

        self._transition(connection, ConnectionStatus.PENDING, {"status": ConnectionStatus.CANCELLED.value}, error)
        self._adjust(sender_id, SENT_COUNT, -1)
        self._adjust(connection.receiver_id, RECEIVED_COUNT, -1)
        # Only the sender's view of the receiver changes on cancel.
        self._mark(sender_id, connection.receiver_id, ignore=True, interested=False)
        return {"success": True}

    def decline_invitation(self, receiver_id: str, connection_id: str) -> Dict[str, Any]:
        error = "Unauthorized or invalid connection for decline"
        connection = load_connection(self.store, connection_id)
        if connection is None or connection.status != ConnectionStatus.PENDING or connection.receiver_id != receiver_id:
            raise Unauthorized(error)

        self._transition(connection, ConnectionStatus.PENDING, {"status": ConnectionStatus.DECLINED.value}, error)
        self._adjust(connection.sender_id, SENT_COUNT, -1)
        self._adjust(receiver_id, RECEIVED_COUNT, -1)
        self._mark(connection.sender_id, receiver_id, ignore=True, interested=False)
        self._mark(receiver_id, connection.sender_id, ignore=True, interested=False)
        return {"success": True}

    def accept_invitation(self, receiver_id: str, connection_id: str) -> Dict[str, Any]:
        error = "Unauthorized or invalid connection for accept"
        connection = load_connection(self.store, connection_id)
        if connection is None or connection.status != ConnectionStatus.PENDING or connection.receiver_id != receiver_id:
            raise Unauthorized(error)

        receiver = self._user(receiver_id, "Receiver user document not found.")
        if receiver.active_chat_count >= config.MAX_ACTIVE_CHATS:
            raise QuotaExceeded(
                f"You have {config.MAX_ACTIVE_CHATS} active chats. Please remove one to accept this new match."
            )

        self._transition(
            connection,
            ConnectionStatus.PENDING,
            {
                "status": ConnectionStatus.CHAT_ACTIVE.value,
                "messageCount": 0,
                "dateProposalStatus": DateProposalStatus.NONE.value,
                "dateProposalDate": None,
                "dateProposalPlace": None,
                "dateProposalProposerId": None,
                "dateProposalLastActionBy": None,
            },
            error,
        )
        sender_id = connection.sender_id
        self._adjust(sender_id, SENT_COUNT, -1)
        self._adjust(receiver_id, RECEIVED_COUNT, -1)
        self._adjust(sender_id, CHAT_COUNT, 1)
        self._adjust(receiver_id, CHAT_COUNT, 1)
        self._mark(sender_id, receiver_id, ignore=False, interested=True)
        self._mark(receiver_id, sender_id, ignore=False, interested=True)

        receiver_name = receiver.name or "Someone"
        self.notifier.notify(
            "Invitation accepted!",
            f"{receiver_name} accepted your invitation. Say hi!",
            users=[sender_id],
            data={"type": "invitation_accepted", "connectionId": connection.id, "receiverId": receiver_id},
        )
        return {"success": True, "newChat": True, "connectionId": connection.id}

    # -------------------- Chats --------------------

    def remove_chat(self, user_id: str, connection_id: str) -> Dict[str, Any]:
        error = "Unauthorized or invalid chat connection for removal"
        connection = load_connection(self.store, connection_id)
        if connection is None or connection.status != ConnectionStatus.CHAT_ACTIVE or not connection.involves(user_id):
            raise Unauthorized(error)

        if connection.sender_id == user_id:
            new_status = ConnectionStatus.CHAT_REMOVED_BY_SENDER
        else:
            new_status = ConnectionStatus.CHAT_REMOVED_BY_RECEIVER
        self._transition(connection, ConnectionStatus.CHAT_ACTIVE, {"status": new_status.value}, error)
        self._adjust(connection.sender_id, CHAT_COUNT, -1)
        self._adjust(connection.receiver_id, CHAT_COUNT, -1)
        return {"success": True}

    # -------------------- Helpers --------------------

    def _connections(self, queries: List[Query]) -> List[Connection]:
        return [Connection.model_validate(doc) for doc in self.store.list(config.CONNECTIONS_COLLECTION, queries)]

    def _user(self, user_id: str, message: str) -> User:
        doc = self.store.get(config.USERS_COLLECTION, user_id)
        if doc is None:
            raise NotFound(message)
        return User.model_validate(doc)

    def _transition(self, connection: Connection, expected: ConnectionStatus, data: Dict[str, Any], error: str) -> None:
        # Guarded on the status we validated, so a concurrent transition wins cleanly.
        updated = self.store.update(
            config.CONNECTIONS_COLLECTION,
            connection.id,
            data,
            where=[Query.equal("status", expected.value)],
        )
        if updated is None:
            raise Unauthorized(error)
        logger.info("Connection %s: %s -> %s", connection.id, expected.value, updated["status"])

    def _adjust(self, user_id: str, field: str, amount: int) -> None:
        if not self.store.increment(config.USERS_COLLECTION, user_id, field, amount):
            if amount < 0:
                logger.warning("%s for user %s already at zero or user missing", field, user_id)
            else:
                logger.warning("User document %s not found while updating %s", user_id, field)

    def _mark(self, user_id: str, who: str, ignore: bool, interested: bool) -> None:
        self.store.update_many(
            config.HAS_SHOWN_COLLECTION,
            [Query.equal("user", user_id), Query.equal("who", who)],
            {"is_ignore": ignore, "is_interested": interested},
        )


def _name(user: Optional[User]) -> str:
    return (user.name if user else None) or "Unknown"
