"""
Chat sessions

Messaging inside a chat_active Connection. Every message, including the
system messages written by the date-proposal negotiation, spends one unit of
the connection's MESSAGE_LIMIT budget; the unit is reserved with a guarded
increment before anything is written, so the budget is never overrun.

Date proposals:

    none/accepted/rejected --propose--> proposed
    proposed/modified --accept--> accepted
    proposed/modified --reject--> rejected
    proposed/modified --modify--> modified

Nobody may answer their own last action.
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import config
from connections import load_connection, party_details
from database import DocumentStore, Query
from errors import Conflict, QuotaExceeded, Unauthorized, ValidationError
from notifications import NotificationChannel
from schemas import (
    ACTIVE_PROPOSAL_STATUSES,
    Connection,
    ConnectionStatus,
    DateProposalStatus,
    Message,
    MessagesInbox,
)

logger = logging.getLogger(__name__)

RESPONSE_TYPES = ("accept", "reject", "modify")
# Date and place stay visible to the client only in these proposal states.
VISIBLE_PROPOSAL_STATUSES = ACTIVE_PROPOSAL_STATUSES + (DateProposalStatus.ACCEPTED,)


def parse_date(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(
            f"Invalid date: {value!r}. Use an ISO-8601 date or date-time, e.g. 2025-07-24 or 2025-07-24T18:47:00"
        )


def describe_date(value: str) -> str:
    """
    'July 24, 2025 at 18:47', or 'July 24, 2025' when `value` carries no time.

    Raises ValidationError for anything that is not ISO-8601.
    """
    when = parse_date(value)
    day = f"{when:%B} {when.day}, {when.year}"
    if len(value) <= 10:
        return day
    return f"{day} at {when:%H:%M}"


def now_ms() -> int:
    return int(time.time() * 1000)


class ChatSession:
    def __init__(self, store: DocumentStore, notifier: Optional[NotificationChannel] = None):
        self.store = store
        self.notifier = notifier or NotificationChannel()

    def active_chats(self, user_id: str) -> List[Dict[str, Any]]:
        active = ConnectionStatus.CHAT_ACTIVE.value
        docs = self.store.list(
            config.CONNECTIONS_COLLECTION, [Query.equal("senderId", user_id), Query.equal("status", active)]
        ) + self.store.list(
            config.CONNECTIONS_COLLECTION, [Query.equal("receiverId", user_id), Query.equal("status", active)]
        )
        connections = {doc["id"]: Connection.model_validate(doc) for doc in docs}
        users, images = party_details(self.store, [c.partner_of(user_id) for c in connections.values()])

        chats = []
        for connection in connections.values():
            partner_id = connection.partner_of(user_id)
            partner = users.get(partner_id)
            if partner is None:
                logger.warning("No user document for partner %s in chat %s", partner_id, connection.id)
                continue
            chats.append({
                "connectionId": connection.id,
                "partnerId": partner_id,
                "partnerName": partner.name or "Unknown",
                "partnerPhotoUrl": images.get(partner_id),
                "messageCount": connection.message_count,
                "dateProposalStatus": connection.date_proposal_status or DateProposalStatus.NONE.value,
            })
        return chats

    def chat_state(self, user_id: str, connection_id: str) -> Dict[str, Any]:
        connection = self._active(user_id, connection_id, "for state lookup")
        partner_id = connection.partner_of(user_id)
        users, images = party_details(self.store, [partner_id])
        partner = users.get(partner_id)

        status = connection.date_proposal_status or DateProposalStatus.NONE.value
        details_visible = status in VISIBLE_PROPOSAL_STATUSES
        return {
            "connectionId": connection.id,
            "currentMessageCount": connection.message_count,
            "currentDateProposalStatus": status,
            "dateProposalDate": connection.date_proposal_date if details_visible else None,
            "dateProposalPlace": connection.date_proposal_place if details_visible else None,
            "dateProposalProposerId": connection.date_proposal_proposer_id,
            "dateProposalLastActionBy": connection.date_proposal_last_action_by,
            "partnerId": partner_id,
            "partnerName": (partner.name if partner else None) or "Unknown",
            "partnerPhotoUrl": images.get(partner_id),
        }

    def send_message(self, user_id: str, connection_id: str, content: str, message_type: str) -> Dict[str, Any]:
        if not content or not message_type:
            raise ValidationError("Message content and type are required.")
        if message_type not in ("text", "image"):
            raise ValidationError("Invalid message type. Must be 'text' or 'image'.")

        connection = self._active(user_id, connection_id, "to send message")
        self._reserve(connection, "Message limit reached for this chat.")

        is_image = message_type == "image"
        message = Message(
            connection_id=connection.id,
            sender_id=user_id,
            message_type=message_type,
            message="[Image]" if is_image else content,
            is_image=is_image,
            image_url=content if is_image else None,
            timestamp=now_ms(),
        )
        created = self.store.create(config.MESSAGES_COLLECTION, message)
        self._refresh_inbox(message)
        return created

    def propose_date(self, user_id: str, connection_id: str, date: str, place: str) -> Dict[str, Any]:
        if not date or not place:
            raise ValidationError("Date and place are required for date proposal.")
        label = describe_date(date)

        connection = self._active(user_id, connection_id, "for date proposal")
        limit_error = "Message limit reached. Cannot propose date."
        self._check_budget(connection, limit_error)
        if connection.date_proposal_status in ACTIVE_PROPOSAL_STATUSES:
            raise Conflict("There is an active date proposal already! Please respond to it or wait for a response.")
        self._reserve(connection, limit_error)

        self._post(connection, user_id, "date_proposal", f"Proposed a date for {label} at {place}.")
        logger.info("Date proposed in %s by %s", connection.id, user_id)
        return self.store.update(
            config.CONNECTIONS_COLLECTION,
            connection.id,
            {
                "dateProposalStatus": DateProposalStatus.PROPOSED.value,
                "dateProposalDate": date,
                "dateProposalPlace": place,
                "dateProposalProposerId": user_id,
                "dateProposalLastActionBy": user_id,
            },
        )

    def respond_to_date_proposal(
        self,
        user_id: str,
        connection_id: str,
        response_type: str,
        new_details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if response_type not in RESPONSE_TYPES:
            raise ValidationError("Invalid or missing response type. Must be 'accept', 'reject', or 'modify'.")

        connection = self._active(user_id, connection_id, "for date response")
        if connection.date_proposal_status not in ACTIVE_PROPOSAL_STATUSES:
            raise ValidationError("No active proposal to respond to.")
        if connection.date_proposal_last_action_by == user_id:
            raise Conflict("You cannot respond to your own last action.")
        limit_error = "Message limit reached. Cannot respond to date proposal."
        self._check_budget(connection, limit_error)

        if response_type == "accept":
            update = {
                "dateProposalStatus": DateProposalStatus.ACCEPTED.value,
                "dateProposalLastActionBy": user_id,
            }
            text = "Accepted the date proposal!"
        elif response_type == "reject":
            update = {
                "dateProposalStatus": DateProposalStatus.REJECTED.value,
                "dateProposalDate": None,
                "dateProposalPlace": None,
                "dateProposalProposerId": None,
                "dateProposalLastActionBy": user_id,
            }
            text = "Rejected the date proposal."
        else:
            details = new_details or {}
            date, place = details.get("date"), details.get("place")
            if not date or not place:
                raise ValidationError("New date and place are required for modifying a proposal.")
            label = describe_date(date)
            # Proposer is kept; only the last actor changes.
            update = {
                "dateProposalStatus": DateProposalStatus.MODIFIED.value,
                "dateProposalDate": date,
                "dateProposalPlace": place,
                "dateProposalLastActionBy": user_id,
            }
            text = f"Modified the date proposal to {label} at {place}."

        self._reserve(connection, limit_error)
        self._post(connection, user_id, "date_response", text)
        updated = self.store.update(config.CONNECTIONS_COLLECTION, connection.id, update)
        logger.info("Date proposal in %s: %s by %s", connection.id, response_type, user_id)

        if response_type == "accept":
            self.notifier.notify(
                "It's a date!",
                f"Your date at {connection.date_proposal_place} is confirmed.",
                users=[connection.sender_id, connection.receiver_id],
                data={"type": "date_confirmed", "connectionId": connection.id},
            )
        return updated

    def chat_messages(self, connection_id: str) -> List[Dict[str, Any]]:
        return self.store.list(
            config.MESSAGES_COLLECTION,
            [
                Query.equal("connectionId", connection_id),
                Query.order_asc("timestamp"),
                Query.order_asc("id"),
                Query.limit(config.CHAT_HISTORY_LIMIT),
            ],
        )

    # -------------------- Helpers --------------------

    def _active(self, user_id: str, connection_id: str, action: str) -> Connection:
        connection = load_connection(self.store, connection_id)
        if connection is None or connection.status != ConnectionStatus.CHAT_ACTIVE or not connection.involves(user_id):
            raise Unauthorized(f"Unauthorized or invalid chat connection {action}")
        return connection

    def _check_budget(self, connection: Connection, error: str) -> None:
        if connection.message_count >= config.MESSAGE_LIMIT:
            raise QuotaExceeded(error)

    def _reserve(self, connection: Connection, error: str) -> None:
        self._check_budget(connection, error)
        if not self.store.increment(
            config.CONNECTIONS_COLLECTION, connection.id, "messageCount", 1, below=config.MESSAGE_LIMIT
        ):
            raise QuotaExceeded(error)

    def _post(self, connection: Connection, user_id: str, message_type: str, text: str) -> None:
        message = Message(
            connection_id=connection.id,
            sender_id=user_id,
            message_type=message_type,
            message=text,
            timestamp=now_ms(),
        )
        self.store.create(config.MESSAGES_COLLECTION, message)
        self._refresh_inbox(message)

    def _refresh_inbox(self, message: Message) -> None:
        inbox = MessagesInbox(
            message=message.message,
            sender_id=message.sender_id,
            message_type=message.message_type,
            is_image=message.is_image,
            image_url=message.image_url,
        )
        self.store.upsert(
            config.MESSAGES_INBOX_COLLECTION,
            [Query.equal("id", message.connection_id)],
            data=inbox.model_dump(by_alias=True, exclude={"id"}),
        )
