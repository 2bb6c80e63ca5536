"""
Runtime configuration

Every value is read from the environment (a local .env file is honoured) so
the same build runs against any deployment of the document database.
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


# -------------------- Database --------------------
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# -------------------- Identity provider / push --------------------
APPWRITE_ENDPOINT = os.getenv("APPWRITE_ENDPOINT", "https://cloud.appwrite.io/v1")
APPWRITE_PROJECT_ID = os.getenv("APPWRITE_PROJECT_ID", "")
APPWRITE_API_KEY = os.getenv("APPWRITE_API_KEY", "")
PUSH_TOPIC = os.getenv("PUSH_TOPIC", "global_notifications")
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))

# -------------------- Quotas --------------------
MAX_ACTIVE_SENT_INVITATIONS = _int("MAX_ACTIVE_SENT_INVITATIONS", 5)
MAX_ACTIVE_RECEIVED_INVITATIONS = _int("MAX_ACTIVE_RECEIVED_INVITATIONS", 5)
MAX_ACTIVE_CHATS = _int("MAX_ACTIVE_CHATS", 3)
MESSAGE_LIMIT = _int("MESSAGE_LIMIT", 100)
CHAT_HISTORY_LIMIT = _int("CHAT_HISTORY_LIMIT", 200)

# -------------------- Discovery --------------------
PAGE_SIZE = _int("PAGE_SIZE", 25)
# Upper bound for the fetch-then-filter scans; users beyond it are never seen.
DISCOVERY_FETCH_LIMIT = _int("DISCOVERY_FETCH_LIMIT", 5000)
PROMPT_SLOTS = 7

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# -------------------- Collections --------------------
USERS_COLLECTION = os.getenv("USERS_COLLECTION", "users")
BIODATA_COLLECTION = os.getenv("BIODATA_COLLECTION", "biodata")
LOCATION_COLLECTION = os.getenv("LOCATION_COLLECTION", "location")
PREFERENCE_COLLECTION = os.getenv("PREFERENCE_COLLECTION", "preference")
SETTINGS_COLLECTION = os.getenv("SETTINGS_COLLECTION", "settings")
IMAGES_COLLECTION = os.getenv("IMAGES_COLLECTION", "images")
HOBBIES_COLLECTION = os.getenv("HOBBIES_COLLECTION", "hobbies")
LANGUAGES_COLLECTION = os.getenv("LANGUAGES_COLLECTION", "languages")
PROMPTS_COLLECTION = os.getenv("PROMPTS_COLLECTION", "prompts")
COMPLETION_STATUS_COLLECTION = os.getenv("COMPLETION_STATUS_COLLECTION", "completion_status")
HAS_SHOWN_COLLECTION = os.getenv("HAS_SHOWN_COLLECTION", "has_shown")
CONNECTIONS_COLLECTION = os.getenv("CONNECTIONS_COLLECTION", "connections")
MESSAGES_COLLECTION = os.getenv("MESSAGES_COLLECTION", "messages")
MESSAGES_INBOX_COLLECTION = os.getenv("MESSAGES_INBOX_COLLECTION", "messages_inbox")
NOTIFICATIONS_COLLECTION = os.getenv("NOTIFICATIONS_COLLECTION", "notifications")
