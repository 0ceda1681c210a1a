"""
Shared data models for the pairwise voting system.

This module contains:
- Test, Option, VoteSession: the embedded document that is the unit of
  consistency for every vote
- LocalizedText: fixed-shape per-language text record
- Helpers for slugs, timestamps and the deterministic bracket order
"""

import hashlib
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ValidationError


class Language(str, Enum):
    """Languages a localized field may carry."""
    TR = "tr"
    EN = "en"
    DE = "de"
    FR = "fr"


class SessionState(str, Enum):
    """Progress of a vote session."""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


@dataclass(frozen=True)
class SiteSettings:
    """Read-mostly site configuration injected into the voting service."""
    default_language: Language = Language.TR
    languages: tuple = tuple(Language)
    unknown_category_label: str = "Unknown category"


def utc_now() -> datetime:
    """Get current UTC time as an aware datetime."""
    return datetime.now(timezone.utc)


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


_SLUG_TRANSLATION = str.maketrans({
    "ç": "c", "ğ": "g", "ı": "i", "ö": "o", "ş": "s", "ü": "u",
    "ä": "a", "ß": "ss", "é": "e", "è": "e", "ê": "e", "à": "a", "â": "a",
})


def slugify(text: str, suffix: Optional[str] = None) -> str:
    """
    Build a URL slug from a title.

    Args:
        text: Title to slugify
        suffix: Optional short identifier appended to keep slugs unique

    Returns:
        str: Lowercase, dash separated slug
    """
    slug = text.replace("İ", "i").lower().translate(_SLUG_TRANSLATION)
    slug = re.sub(r"[^a-z0-9]+", "-", slug).strip("-") or "test"
    if suffix:
        slug = f"{slug}-{suffix}"
    return slug


def bracket_key(test_id: str, option_id: str) -> str:
    """
    Sort key placing an option in a test's elimination bracket.

    SHA-256 of test id and option id, so every fresh session on the same
    test gets the same initial pairing while different tests get different
    orders.
    """
    combined = f"{test_id}:{option_id}"
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()


def new_id() -> str:
    """Generate an opaque unique identifier."""
    return uuid.uuid4().hex


@dataclass
class LocalizedText:
    """Text in each supported language; unset languages are None."""
    tr: Optional[str] = None
    en: Optional[str] = None
    de: Optional[str] = None
    fr: Optional[str] = None

    def get(self, language: Language) -> Optional[str]:
        return getattr(self, Language(language).value)

    def has(self, language: Language) -> bool:
        value = self.get(language)
        return bool(value and value.strip())

    def resolve(self, language: Language, fallback: Language = Language.TR) -> str:
        """Text in ``language``, else ``fallback``, else the first language set."""
        for candidate in (language, fallback, *Language):
            if self.has(candidate):
                return self.get(candidate)
        return ""

    def to_dict(self) -> Dict[str, str]:
        return {
            lang.value: self.get(lang)
            for lang in Language
            if self.get(lang) is not None
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "LocalizedText":
        data = data or {}
        values = {}
        for lang in Language:
            value = data.get(lang.value)
            values[lang.value] = value.strip() if isinstance(value, str) else None
        return cls(**values)


@dataclass
class CustomField:
    """Localized name/value pair attached to an option."""
    name: LocalizedText
    value: LocalizedText

    def is_complete(self, language: Language) -> bool:
        return self.name.has(language) and self.value.has(language)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name.to_dict(), "value": self.value.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CustomField":
        return cls(
            name=LocalizedText.from_dict(data.get("name")),
            value=LocalizedText.from_dict(data.get("value")),
        )


@dataclass
class Option:
    """
    One alternative within a test.

    Attributes:
        id: Stable identifier for the lifetime of the test
        title: Localized option title
        image: Image reference or URL
        custom_fields: Ordered localized name/value pairs
        votes: Cumulative vote count
        win_rate: Share of the test's total votes, in percent
    """
    id: str
    title: LocalizedText
    image: str
    custom_fields: List[CustomField] = field(default_factory=list)
    votes: int = 0
    win_rate: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title.to_dict(),
            "image": self.image,
            "custom_fields": [cf.to_dict() for cf in self.custom_fields],
            "votes": self.votes,
            "win_rate": self.win_rate,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Option":
        return cls(
            id=data["id"],
            title=LocalizedText.from_dict(data.get("title")),
            image=data.get("image", ""),
            custom_fields=[CustomField.from_dict(cf) for cf in data.get("custom_fields", [])],
            votes=int(data.get("votes", 0)),
            win_rate=float(data.get("win_rate", 0.0)),
        )


@dataclass
class Voter:
    """Authenticated direct vote recorded alongside the tally."""
    participant_id: str
    option_id: str
    voted_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "participant_id": self.participant_id,
            "option_id": self.option_id,
            "voted_at": _format_timestamp(self.voted_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Voter":
        return cls(
            participant_id=data["participant_id"],
            option_id=data["option_id"],
            voted_at=parse_timestamp(data.get("voted_at")),
        )


@dataclass
class TestStats:
    """Derived test-level statistics maintained by the ledger."""
    __test__ = False

    total_comparisons: int = 0
    average_votes_per_option: float = 0.0
    most_popular_option: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_comparisons": self.total_comparisons,
            "average_votes_per_option": self.average_votes_per_option,
            "most_popular_option": self.most_popular_option,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TestStats":
        data = data or {}
        return cls(
            total_comparisons=int(data.get("total_comparisons", 0)),
            average_votes_per_option=float(data.get("average_votes_per_option", 0.0)),
            most_popular_option=data.get("most_popular_option"),
        )


@dataclass
class VoteSession:
    """
    One participant's elimination run through a test's options.

    Attributes:
        session_id: Identity key, unique within the test
        participant_id: Owning user, or None for a guest session
        current_pair: The two option ids under comparison, empty once complete
        remaining_options: Option ids not yet introduced into a comparison
        winners: Option id picked in each completed round, in order
        is_complete: True once the final round has been decided
        final_winner: Option id that won the final round
        started_at: Creation time
        completed_at: Completion time, None while running
    """
    session_id: str
    participant_id: Optional[str] = None
    current_pair: List[str] = field(default_factory=list)
    remaining_options: List[str] = field(default_factory=list)
    winners: List[str] = field(default_factory=list)
    is_complete: bool = False
    final_winner: Optional[str] = None
    started_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    @property
    def is_guest(self) -> bool:
        return self.participant_id is None

    @property
    def state(self) -> SessionState:
        if self.is_complete:
            return SessionState.COMPLETE
        if self.winners:
            return SessionState.IN_PROGRESS
        return SessionState.NOT_STARTED

    @property
    def rounds_played(self) -> int:
        return len(self.winners)

    @property
    def rounds_left(self) -> int:
        """Comparisons still to decide, including the current pair."""
        if self.is_complete:
            return 0
        return len(self.remaining_options) + (1 if self.current_pair else 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "participant_id": self.participant_id,
            "current_pair": list(self.current_pair),
            "remaining_options": list(self.remaining_options),
            "winners": list(self.winners),
            "is_complete": self.is_complete,
            "final_winner": self.final_winner,
            "started_at": _format_timestamp(self.started_at),
            "completed_at": _format_timestamp(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VoteSession":
        return cls(
            session_id=data["session_id"],
            participant_id=data.get("participant_id"),
            current_pair=list(data.get("current_pair", [])),
            remaining_options=list(data.get("remaining_options", [])),
            winners=list(data.get("winners", [])),
            is_complete=bool(data.get("is_complete", False)),
            final_winner=data.get("final_winner"),
            started_at=parse_timestamp(data.get("started_at")) or utc_now(),
            completed_at=parse_timestamp(data.get("completed_at")),
        )


@dataclass
class Test:
    """
    The voting subject and its embedded options and sessions.

    Options and sessions live inside the test and are addressed by id, so a
    single document read-modify-write covers every vote mutation.
    """
    __test__ = False

    id: str
    title: LocalizedText
    category: str
    options: List[Option]
    created_by: Optional[str] = None
    slug: str = ""
    description: LocalizedText = field(default_factory=LocalizedText)
    header_text: LocalizedText = field(default_factory=LocalizedText)
    footer_text: LocalizedText = field(default_factory=LocalizedText)
    cover_image: Optional[str] = None
    total_votes: int = 0
    is_active: bool = True
    end_date: Optional[datetime] = None
    trend: bool = False
    popular: bool = False
    voters: List[Voter] = field(default_factory=list)
    stats: TestStats = field(default_factory=TestStats)
    vote_sessions: List[VoteSession] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def find_option(self, option_id: str) -> Optional[Option]:
        for option in self.options:
            if option.id == option_id:
                return option
        return None

    def find_session(self, session_id: str) -> Optional[VoteSession]:
        for session in self.vote_sessions:
            if session.session_id == session_id:
                return session
        return None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.end_date is not None and (now or utc_now()) >= self.end_date

    def expire(self, now: Optional[datetime] = None) -> bool:
        """
        Deactivate the test if its end date has passed.

        Returns:
            bool: True if this call changed ``is_active``
        """
        if self.is_active and self.is_expired(now):
            self.is_active = False
            return True
        return False

    def accepts_votes(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and not self.is_expired(now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the stored document format."""
        return {
            "id": self.id,
            "slug": self.slug,
            "title": self.title.to_dict(),
            "description": self.description.to_dict(),
            "header_text": self.header_text.to_dict(),
            "footer_text": self.footer_text.to_dict(),
            "cover_image": self.cover_image,
            "category": self.category,
            "options": [option.to_dict() for option in self.options],
            "total_votes": self.total_votes,
            "is_active": self.is_active,
            "end_date": _format_timestamp(self.end_date),
            "trend": self.trend,
            "popular": self.popular,
            "created_by": self.created_by,
            "voters": [voter.to_dict() for voter in self.voters],
            "stats": self.stats.to_dict(),
            "vote_sessions": [session.to_dict() for session in self.vote_sessions],
            "created_at": _format_timestamp(self.created_at),
            "updated_at": _format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Test":
        """Create a Test from its stored document."""
        return cls(
            id=data["id"],
            slug=data.get("slug", ""),
            title=LocalizedText.from_dict(data.get("title")),
            description=LocalizedText.from_dict(data.get("description")),
            header_text=LocalizedText.from_dict(data.get("header_text")),
            footer_text=LocalizedText.from_dict(data.get("footer_text")),
            cover_image=data.get("cover_image"),
            category=data.get("category", ""),
            options=[Option.from_dict(o) for o in data.get("options", [])],
            total_votes=int(data.get("total_votes", 0)),
            is_active=bool(data.get("is_active", True)),
            end_date=parse_timestamp(data.get("end_date")),
            trend=bool(data.get("trend", False)),
            popular=bool(data.get("popular", False)),
            created_by=data.get("created_by"),
            voters=[Voter.from_dict(v) for v in data.get("voters", [])],
            stats=TestStats.from_dict(data.get("stats")),
            vote_sessions=[VoteSession.from_dict(s) for s in data.get("vote_sessions", [])],
            created_at=parse_timestamp(data.get("created_at")) or utc_now(),
            updated_at=parse_timestamp(data.get("updated_at")) or utc_now(),
        )


def localized_text(
    data: Optional[Dict[str, Any]], site: SiteSettings, field_name: str
) -> LocalizedText:
    """
    Build a LocalizedText, refusing text in languages the site does not offer.

    Raises:
        ValidationError: If ``data`` carries text in an unsupported language
    """
    text = LocalizedText.from_dict(data)
    unsupported = [
        lang.value for lang in Language
        if lang not in site.languages and text.has(lang)
    ]
    if unsupported:
        raise ValidationError(
            f"{field_name} has text in unsupported languages: {', '.join(unsupported)}",
            {"field": field_name, "languages": unsupported},
        )
    return text


def build_option(data: Dict[str, Any], site: SiteSettings, option_id: Optional[str] = None) -> Option:
    """
    Validate raw option input and build an Option.

    Custom fields missing either side in the default language are dropped.

    Raises:
        ValidationError: If the title or image is missing
    """
    title = localized_text(data.get("title"), site, "Option title")
    image = (data.get("image") or "").strip()
    if not title.has(site.default_language) or not image:
        raise ValidationError(
            f"Every option needs a '{site.default_language.value}' title and an image"
        )

    custom_fields = [
        CustomField.from_dict(cf) for cf in data.get("custom_fields") or []
    ]
    custom_fields = [cf for cf in custom_fields if cf.is_complete(site.default_language)]

    return Option(
        id=option_id or new_id(),
        title=title,
        image=image,
        custom_fields=custom_fields,
    )


def new_test(
    data: Dict[str, Any],
    site: SiteSettings,
    created_by: Optional[str] = None,
) -> Test:
    """
    Validate raw test input and build a new Test.

    Args:
        data: Test fields (title, category, options, ...)
        site: Site settings naming the required language
        created_by: Creating participant id

    Returns:
        Test: New test with zeroed tallies and no sessions

    Raises:
        ValidationError: If the title, category or options are invalid
    """
    title = localized_text(data.get("title"), site, "title")
    category = (data.get("category") or "").strip()
    if not title.has(site.default_language) or not category:
        raise ValidationError(
            f"A '{site.default_language.value}' title and a category are required"
        )

    raw_options = data.get("options") or []
    if len(raw_options) < 2:
        raise ValidationError("At least 2 options are required")
    options = [build_option(raw, site) for raw in raw_options]

    test_id = new_id()
    return Test(
        id=test_id,
        slug=slugify(title.resolve(site.default_language), test_id[:6]),
        title=title,
        description=localized_text(data.get("description"), site, "description"),
        header_text=localized_text(data.get("header_text"), site, "header_text"),
        footer_text=localized_text(data.get("footer_text"), site, "footer_text"),
        cover_image=data.get("cover_image"),
        category=category,
        options=options,
        end_date=parse_timestamp(data.get("end_date")),
        trend=bool(data.get("trend", False)),
        popular=bool(data.get("popular", False)),
        created_by=created_by,
    )
