"""
Candidate discovery

Two ways of filling the explore screen:

- next_batch pages through profiles that satisfy the requester's preferences
  (distance, age range, gender, shared hobbies);
- random_batch ignores preferences and returns a shuffled sample of complete,
  other-gender profiles the requester has no connection with.

Both skip profiles already shown to the requester and users in incognito mode,
enrich the survivors with a bulk lookup per collection, and record every
returned profile as shown. Candidate scans are capped at
DISCOVERY_FETCH_LIMIT documents; users past the cap are never considered.
"""

import logging
import random
from typing import Any, Dict, Iterable, List, Optional, Set, Type, TypeVar

import config
from database import DocumentStore, Query
from errors import NotFound
from geo import haversine
from schemas import (
    Biodata,
    CompletionStatus,
    Document,
    HasShown,
    Hobby,
    Image,
    Language,
    Location,
    Preference,
    Prompt,
    Settings,
)

logger = logging.getLogger(__name__)

D = TypeVar("D", bound=Document)

DEFAULT_SETTINGS = {"isIncognito": False, "isHideName": False}


def mask_name(name: Optional[str]) -> str:
    return f"{name[0]}." if name else ""


def is_incognito(settings: Optional[Settings]) -> bool:
    return bool(settings and settings.is_incognito)


def matches_preference(bio: Biodata, preference: Preference) -> bool:
    """Age range and gender must match; hobbies only when the requester lists some."""
    if bio.age is not None:
        if preference.min_age is not None and bio.age < preference.min_age:
            return False
        if preference.max_age is not None and bio.age > preference.max_age:
            return False
    if preference.preferred_gender and bio.gender != preference.preferred_gender:
        return False
    if preference.preferred_hobbies and not set(bio.hobbies) & set(preference.preferred_hobbies):
        return False
    return True


class DiscoveryEngine:
    def __init__(
        self,
        store: DocumentStore,
        rng: Optional[random.Random] = None,
        page_size: int = config.PAGE_SIZE,
        fetch_limit: int = config.DISCOVERY_FETCH_LIMIT,
    ):
        self.store = store
        self.rng = rng or random.Random()
        self.page_size = page_size
        self.fetch_limit = fetch_limit

    # -------------------- Preference-filtered batch --------------------

    def next_batch(self, user_id: str, page: int = 0) -> List[Dict[str, Any]]:
        shown = self.shown_user_ids(user_id)

        preference_doc = self.store.first(config.PREFERENCE_COLLECTION, [Query.equal("user", user_id)])
        if preference_doc is None:
            logger.warning("Preferences not found for user %s, returning no profiles", user_id)
            return []
        preference = Preference.model_validate(preference_doc)

        own_location = self.store.first(config.LOCATION_COLLECTION, [Query.equal("user", user_id)])
        if own_location is None:
            raise NotFound("User location not found")
        origin = Location.model_validate(own_location)
        by_distance = bool(preference.max_distance_km)
        if by_distance and not origin.has_coordinates:
            raise NotFound("User location not found")

        nearby: Dict[str, Location] = {}
        for doc in self.store.list(
            config.LOCATION_COLLECTION,
            [Query.not_equal("user", user_id), Query.limit(self.fetch_limit)],
        ):
            if not doc.get("user") or doc["user"] in shown:
                continue
            location = Location.model_validate(doc)
            if by_distance:
                if not location.has_coordinates:
                    continue
                distance = haversine(origin.latitude, origin.longitude, location.latitude, location.longitude)
                if distance > preference.max_distance_km:
                    continue
            nearby[location.user] = location
        if not nearby:
            return []

        settings = self._by_user(config.SETTINGS_COLLECTION, nearby, Settings)
        visible = [uid for uid in nearby if not is_incognito(settings.get(uid))]
        if not visible:
            return []

        # Over-fetch to leave room for the age/gender/hobby filters below.
        bios = self.store.list(
            config.BIODATA_COLLECTION,
            [
                Query.equal("user", visible),
                Query.order_asc("id"),
                Query.offset(page * self.page_size),
                Query.limit(self.page_size * 2),
            ],
        )

        accepted: List[Biodata] = []
        for doc in bios:
            if len(accepted) >= self.page_size:
                break
            bio = Biodata.model_validate(doc)
            if matches_preference(bio, preference):
                accepted.append(bio)

        profiles = self.enrich(accepted, settings, nearby)
        self.mark_shown(user_id, profiles)
        return profiles

    # -------------------- Randomized batch --------------------

    def random_batch(self, user_id: str, limit: int = config.PAGE_SIZE) -> List[Dict[str, Any]]:
        shown = self.shown_user_ids(user_id)

        own_bio = self.store.first(config.BIODATA_COLLECTION, [Query.equal("user", user_id)])
        if own_bio is None:
            logger.warning("Biodata not found for user %s, returning no profiles", user_id)
            return []

        docs = self.store.list(
            config.BIODATA_COLLECTION,
            [
                Query.not_equal("user", user_id),
                Query.not_equal("gender", own_bio.get("gender")),
                Query.limit(self.fetch_limit),
            ],
        )
        bios = [Biodata.model_validate(doc) for doc in docs if doc.get("user")]
        bios = [bio for bio in bios if bio.user not in shown]
        if not bios:
            return []

        connected = self.connected_user_ids(user_id, [bio.user for bio in bios])
        bios = [bio for bio in bios if bio.user not in connected]
        if not bios:
            return []

        completed = self.completed_user_ids([bio.user for bio in bios])
        bios = [bio for bio in bios if bio.user in completed]
        if not bios:
            return []

        settings = self._by_user(config.SETTINGS_COLLECTION, [bio.user for bio in bios], Settings)
        bios = [bio for bio in bios if not is_incognito(settings.get(bio.user))]

        self.rng.shuffle(bios)
        selected = bios[:limit]
        if not selected:
            return []

        locations = self._by_user(config.LOCATION_COLLECTION, [bio.user for bio in selected], Location)
        profiles = self.enrich(selected, settings, locations)
        self.mark_shown(user_id, profiles)
        return profiles

    # -------------------- Shared steps --------------------

    def shown_user_ids(self, user_id: str) -> Set[str]:
        docs = self.store.list(
            config.HAS_SHOWN_COLLECTION,
            [Query.equal("user", user_id), Query.limit(self.fetch_limit)],
        )
        return {doc["who"] for doc in docs if doc.get("who")}

    def connected_user_ids(self, user_id: str, candidate_ids: List[str]) -> Set[str]:
        """Candidates with a Connection to or from the user, in any state."""
        as_sender = self.store.list(
            config.CONNECTIONS_COLLECTION,
            [
                Query.equal("senderId", user_id),
                Query.equal("receiverId", candidate_ids),
                Query.limit(self.fetch_limit),
            ],
        )
        as_receiver = self.store.list(
            config.CONNECTIONS_COLLECTION,
            [
                Query.equal("receiverId", user_id),
                Query.equal("senderId", candidate_ids),
                Query.limit(self.fetch_limit),
            ],
        )
        return {doc["receiverId"] for doc in as_sender} | {doc["senderId"] for doc in as_receiver}

    def completed_user_ids(self, candidate_ids: List[str]) -> Set[str]:
        docs = self.store.list(
            config.COMPLETION_STATUS_COLLECTION,
            [
                Query.equal("user", candidate_ids),
                Query.equal("isAllCompleted", True),
                Query.limit(self.fetch_limit),
            ],
        )
        return {CompletionStatus.model_validate(doc).user for doc in docs}

    def enrich(
        self,
        bios: List[Biodata],
        settings: Dict[str, Settings],
        locations: Dict[str, Location],
    ) -> List[Dict[str, Any]]:
        """Build client profiles with one lookup per related collection."""
        user_ids = [bio.user for bio in bios]
        if not user_ids:
            return []
        prompts = self._by_user(config.PROMPTS_COLLECTION, user_ids, Prompt)
        images = self._by_user(config.IMAGES_COLLECTION, user_ids, Image)
        hobbies = self._by_id(config.HOBBIES_COLLECTION, {h for bio in bios for h in bio.hobbies}, Hobby)
        languages = self._by_id(config.LANGUAGES_COLLECTION, {lang for bio in bios for lang in bio.languages}, Language)

        profiles = []
        for bio in bios:
            profile_settings = settings.get(bio.user)
            biodata = bio.model_dump(by_alias=True)
            if profile_settings and profile_settings.is_hide_name:
                biodata["name"] = mask_name(bio.name)
            location = locations.get(bio.user)
            prompt = prompts.get(bio.user)
            image = images.get(bio.user)
            profiles.append({
                "userId": bio.user,
                "biodata": biodata,
                "location": location.model_dump(by_alias=True) if location else None,
                "images": image.urls() if image else [],
                "hobbies": [hobbies[h].model_dump() for h in bio.hobbies if h in hobbies],
                "languages": [languages[lang].model_dump() for lang in bio.languages if lang in languages],
                "prompts": prompt.answers(config.PROMPT_SLOTS) if prompt else [None] * config.PROMPT_SLOTS,
                "settings": profile_settings.model_dump(by_alias=True) if profile_settings else dict(DEFAULT_SETTINGS),
            })
        return profiles

    def mark_shown(self, user_id: str, profiles: List[Dict[str, Any]]) -> None:
        for profile in profiles:
            row = HasShown(user=user_id, who=profile["userId"])
            self.store.upsert(
                config.HAS_SHOWN_COLLECTION,
                [Query.equal("user", row.user), Query.equal("who", row.who)],
                defaults=row.model_dump(include={"is_ignore", "is_interested"}),
            )

    def _by_user(self, collection: str, user_ids: Iterable[str], model: Type[D]) -> Dict[str, D]:
        user_ids = list(user_ids)
        docs = self.store.list(collection, [Query.equal("user", user_ids), Query.limit(len(user_ids))])
        return {doc["user"]: model.model_validate(doc) for doc in docs if doc.get("user")}

    def _by_id(self, collection: str, ids: Set[str], model: Type[D]) -> Dict[str, D]:
        docs = self.store.list(collection, [Query.equal("id", sorted(ids)), Query.limit(len(ids))])
        return {doc["id"]: model.model_validate(doc) for doc in docs}
