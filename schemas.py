"""
Database Schemas

MongoDB collection schemas for the matchmaking platform. Each Pydantic model
describes one collection (collection names live in config.py). Relations are
stored as plain user / connection id strings; Python attribute names are
snake_case and the stored field names are their aliases.
"""

from enum import Enum
from typing import Annotated, List, Literal, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field


class ConnectionStatus(str, Enum):
    PENDING = "pending"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    CHAT_ACTIVE = "chat_active"
    CHAT_REMOVED_BY_SENDER = "chat_removed_by_sender"
    CHAT_REMOVED_BY_RECEIVER = "chat_removed_by_receiver"


class DateProposalStatus(str, Enum):
    NONE = "none"
    PROPOSED = "proposed"
    MODIFIED = "modified"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


# A proposal in one of these states is waiting for the other party.
ACTIVE_PROPOSAL_STATUSES = (DateProposalStatus.PROPOSED, DateProposalStatus.MODIFIED)

MessageType = Literal["text", "image", "date_proposal", "date_response"]


class Document(BaseModel):
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True, validate_default=True)

    id: Optional[str] = Field(None, description="Document id")


# Half-filled onboarding rows store null for lists and flags.
IdList = Annotated[List[str], BeforeValidator(lambda v: [] if v is None else v)]
Flag = Annotated[bool, BeforeValidator(lambda v: False if v is None else v)]


# Account-level counters, kept in step with Connection transitions
class User(Document):
    name: Optional[str] = None
    active_sent_invitation_count: int = Field(0, alias="activeSentInvitationCount")
    active_received_invitation_count: int = Field(0, alias="activeReceivedInvitationCount")
    active_chat_count: int = Field(0, alias="activeChatCount")


class Biodata(Document):
    # Extra profile attributes are passed through to the client untouched
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    user: str = Field(..., description="Owner user id")
    name: Optional[str] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    hobbies: IdList = Field(default_factory=list, description="Hobby ids")
    languages: IdList = Field(default_factory=list, description="Language ids")


class Location(Document):
    user: str
    # Null until the client has reported a position
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class Preference(Document):
    user: str
    min_age: Optional[int] = None
    max_age: Optional[int] = None
    preferred_gender: Optional[str] = None
    max_distance_km: Optional[float] = Field(None, description="Unset means no distance filter")
    preferred_hobbies: IdList = Field(default_factory=list, description="Hobby ids")


class Settings(Document):
    user: str
    is_incognito: Flag = Field(False, alias="isIncognito")
    is_hide_name: Flag = Field(False, alias="isHideName")


class Image(Document):
    user: str
    image_1: Optional[str] = Field(None, description="Primary image URL")
    image_2: Optional[str] = None
    image_3: Optional[str] = None
    image_4: Optional[str] = None
    image_5: Optional[str] = None
    image_6: Optional[str] = None

    def urls(self) -> List[str]:
        slots = [self.image_1, self.image_2, self.image_3, self.image_4, self.image_5, self.image_6]
        return [url for url in slots if url]


class Prompt(Document):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    user: str

    def answers(self, slots: int) -> List[Optional[str]]:
        extra = self.model_extra or {}
        return [extra.get(f"answer_{i}") or None for i in range(1, slots + 1)]


class CompletionStatus(Document):
    user: str
    is_all_completed: Flag = Field(False, alias="isAllCompleted")


class Hobby(Document):
    label: Optional[str] = None


class Language(Document):
    label: Optional[str] = None


# One row per (viewer, viewed) pair
class HasShown(Document):
    user: str = Field(..., description="Viewer user id")
    who: str = Field(..., description="Viewed user id")
    is_ignore: bool = False
    is_interested: bool = False


class Connection(Document):
    sender_id: str = Field(..., alias="senderId")
    receiver_id: str = Field(..., alias="receiverId")
    status: ConnectionStatus = ConnectionStatus.PENDING
    message_count: int = Field(0, alias="messageCount")
    date_proposal_status: Optional[DateProposalStatus] = Field(None, alias="dateProposalStatus")
    date_proposal_date: Optional[str] = Field(None, alias="dateProposalDate")
    date_proposal_place: Optional[str] = Field(None, alias="dateProposalPlace")
    date_proposal_proposer_id: Optional[str] = Field(None, alias="dateProposalProposerId")
    date_proposal_last_action_by: Optional[str] = Field(None, alias="dateProposalLastActionBy")

    def involves(self, user_id: str) -> bool:
        return user_id in (self.sender_id, self.receiver_id)

    def partner_of(self, user_id: str) -> str:
        return self.receiver_id if self.sender_id == user_id else self.sender_id


class Message(Document):
    connection_id: str = Field(..., alias="connectionId")
    sender_id: str = Field(..., alias="senderId")
    message_type: MessageType = Field(..., alias="messageType")
    message: str
    is_image: bool = False
    image_url: Optional[str] = Field(None, alias="imageUrl")
    timestamp: int = Field(..., description="Milliseconds since the epoch")
    is_read: bool = False


# Latest-message projection, keyed by connection id
class MessagesInbox(Document):
    message: Optional[str] = None
    sender_id: Optional[str] = Field(None, alias="senderId")
    message_type: Optional[MessageType] = Field(None, alias="messageType")
    is_image: Optional[bool] = None
    image_url: Optional[str] = Field(None, alias="imageUrl")


# In-app notification feed
class Notification(Document):
    to: str
    sender: str = Field(..., alias="from")
    type: str
    payload: str
    is_read: bool = False
