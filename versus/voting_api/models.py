"""Pydantic models for request/response validation."""
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, validator

from ..shared.models import Test, Voter, VoteSession
from ..shared.results import RankedOption


class LocalizedTextModel(BaseModel):
    """Per-language text; languages outside the supported set are rejected."""

    tr: Optional[str] = None
    en: Optional[str] = None
    de: Optional[str] = None
    fr: Optional[str] = None

    class Config:
        extra = "forbid"


class CustomFieldModel(BaseModel):
    name: LocalizedTextModel
    value: LocalizedTextModel


class OptionIn(BaseModel):
    """Option supplied when creating a test."""

    title: LocalizedTextModel = Field(..., description="Localized option title")
    image: str = Field(..., description="Image reference or URL")
    custom_fields: List[CustomFieldModel] = Field(default_factory=list)


class OptionUpdate(BaseModel):
    """Edit to an existing option, addressed by id."""

    id: str = Field(..., description="Option identifier")
    title: Optional[LocalizedTextModel] = None
    image: Optional[str] = None
    custom_fields: Optional[List[CustomFieldModel]] = None


class TestCreateRequest(BaseModel):
    """Test creation request model."""
    __test__ = False

    title: LocalizedTextModel = Field(..., description="Localized test title")
    category: str = Field(..., description="Category identifier")
    options: List[OptionIn] = Field(..., description="At least two options")
    description: Optional[LocalizedTextModel] = None
    header_text: Optional[LocalizedTextModel] = None
    footer_text: Optional[LocalizedTextModel] = None
    cover_image: Optional[str] = None
    end_date: Optional[datetime] = Field(default=None, description="Voting closes at this time")
    trend: bool = False
    popular: bool = False

    @validator("category")
    def validate_category(cls, v):
        """Validate category is not empty."""
        if not v or not v.strip():
            raise ValueError("Category cannot be empty")
        return v.strip()

    class Config:
        json_schema_extra = {
            "example": {
                "title": {"tr": "En iyi kahve", "en": "Best coffee"},
                "category": "food",
                "options": [
                    {"title": {"tr": "Espresso"}, "image": "https://cdn.example.com/espresso.jpg"},
                    {"title": {"tr": "Latte"}, "image": "https://cdn.example.com/latte.jpg"},
                    {"title": {"tr": "Filtre"}, "image": "https://cdn.example.com/filter.jpg"}
                ],
                "end_date": "2026-12-31T23:59:00Z"
            }
        }


class TestUpdateRequest(BaseModel):
    """Partial test update; only fields sent are changed."""
    __test__ = False

    title: Optional[LocalizedTextModel] = None
    category: Optional[str] = None
    description: Optional[LocalizedTextModel] = None
    header_text: Optional[LocalizedTextModel] = None
    footer_text: Optional[LocalizedTextModel] = None
    cover_image: Optional[str] = None
    is_active: Optional[bool] = None
    end_date: Optional[datetime] = None
    trend: Optional[bool] = None
    popular: Optional[bool] = None
    options: Optional[List[OptionUpdate]] = None

    class Config:
        json_schema_extra = {
            "example": {
                "is_active": True,
                "end_date": None,
                "options": [{"id": "4f1c...", "image": "https://cdn.example.com/espresso-2.jpg"}]
            }
        }


class CustomFieldView(BaseModel):
    name: Dict[str, str]
    value: Dict[str, str]


class OptionView(BaseModel):
    id: str
    title: Dict[str, str]
    image: str
    custom_fields: List[CustomFieldView]
    votes: int
    win_rate: float


class TestStatsView(BaseModel):
    __test__ = False

    total_comparisons: int
    average_votes_per_option: float
    most_popular_option: Optional[str] = None


class TestView(BaseModel):
    """Full test detail."""
    __test__ = False

    id: str
    slug: str
    title: Dict[str, str]
    description: Dict[str, str]
    header_text: Dict[str, str]
    footer_text: Dict[str, str]
    cover_image: Optional[str] = None
    category: str
    options: List[OptionView]
    total_votes: int
    is_active: bool
    end_date: Optional[datetime] = None
    trend: bool
    popular: bool
    created_by: Optional[str] = None
    stats: TestStatsView
    session_count: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_test(cls, test: Test) -> "TestView":
        doc = test.to_dict()
        doc.pop("voters")
        doc["session_count"] = len(doc.pop("vote_sessions"))
        return cls(**doc)


class TestSummary(BaseModel):
    """Test entry in a listing."""
    __test__ = False

    id: str
    slug: str
    title: Dict[str, str]
    category: str
    cover_image: Optional[str] = None
    option_count: int
    total_votes: int
    is_active: bool
    end_date: Optional[datetime] = None
    trend: bool
    popular: bool
    created_at: datetime

    @classmethod
    def from_test(cls, test: Test) -> "TestSummary":
        return cls(
            id=test.id,
            slug=test.slug,
            title=test.title.to_dict(),
            category=test.category,
            cover_image=test.cover_image,
            option_count=len(test.options),
            total_votes=test.total_votes,
            is_active=test.is_active,
            end_date=test.end_date,
            trend=test.trend,
            popular=test.popular,
            created_at=test.created_at,
        )


class TestListResponse(BaseModel):
    """Paginated test listing."""
    __test__ = False

    tests: List[TestSummary]
    total: int
    page: int
    limit: int
    pages: int


class SessionStartRequest(BaseModel):
    """Vote session start request model."""

    session_id: Optional[str] = Field(
        default=None,
        description="Client-chosen session id; generated when omitted"
    )

    @validator("session_id")
    def validate_session_id(cls, v):
        """Validate session_id is not blank."""
        if v is not None and not v.strip():
            raise ValueError("Session ID cannot be empty")
        return v.strip() if v else v


class SessionView(BaseModel):
    """Vote session state."""

    session_id: str
    test_id: str
    participant_id: Optional[str] = None
    state: Literal["not_started", "in_progress", "complete"]
    current_pair: List[str]
    remaining_count: int
    rounds_played: int
    rounds_left: int
    winners: List[str]
    is_complete: bool
    final_winner: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_session(cls, test_id: str, session: VoteSession) -> "SessionView":
        return cls(
            session_id=session.session_id,
            test_id=test_id,
            participant_id=session.participant_id,
            state=session.state.value,
            current_pair=list(session.current_pair),
            remaining_count=len(session.remaining_options),
            rounds_played=session.rounds_played,
            rounds_left=session.rounds_left,
            winners=list(session.winners),
            is_complete=session.is_complete,
            final_winner=session.final_winner,
            started_at=session.started_at,
            completed_at=session.completed_at,
        )

    class Config:
        json_schema_extra = {
            "example": {
                "session_id": "0d6f3c1e-8a51-4a3b-9c7e-2f1e9b0a7d44",
                "test_id": "9b2e...",
                "participant_id": None,
                "state": "in_progress",
                "current_pair": ["a1...", "c3..."],
                "remaining_count": 1,
                "rounds_played": 1,
                "rounds_left": 2,
                "winners": ["a1..."],
                "is_complete": False,
                "final_winner": None,
                "started_at": "2026-01-15T10:30:00Z",
                "completed_at": None
            }
        }


class AdvanceRequest(BaseModel):
    """Pick for the current pair of a vote session."""

    option_id: str = Field(..., description="Chosen option, must be in the current pair")
    round: Optional[int] = Field(
        default=None,
        ge=0,
        description="Rounds already played when the pair was shown"
    )

    @validator("option_id")
    def validate_option_id(cls, v):
        """Validate option_id is not empty."""
        if not v or not v.strip():
            raise ValueError("Option ID cannot be empty")
        return v.strip()


class DirectVoteRequest(BaseModel):
    """Direct vote request model."""

    option_id: str = Field(..., description="Chosen option")

    @validator("option_id")
    def validate_option_id(cls, v):
        """Validate option_id is not empty."""
        if not v or not v.strip():
            raise ValueError("Option ID cannot be empty")
        return v.strip()

    class Config:
        json_schema_extra = {
            "example": {"option_id": "4f1c9a..."}
        }


class TallyResponse(BaseModel):
    """Tally after a direct vote or reset."""

    test_id: str
    total_votes: int
    options: List[OptionView]

    @classmethod
    def from_test(cls, test: Test) -> "TallyResponse":
        return cls(
            test_id=test.id,
            total_votes=test.total_votes,
            options=[OptionView(**option.to_dict()) for option in test.options],
        )


class RankedOptionView(BaseModel):
    rank: int
    option_id: str
    title: Dict[str, str]
    image: str
    custom_fields: List[CustomFieldView]
    votes: int
    percentage: float
    win_rate: float


class SessionStatistics(BaseModel):
    total_sessions: int
    completed_sessions: int
    guest_sessions: int
    user_sessions: int


class ResultsResponse(BaseModel):
    """Ranked results for a test."""

    test_id: str
    source: Literal["tally", "sessions"]
    total_votes: int
    results: List[RankedOptionView]
    statistics: SessionStatistics

    @classmethod
    def build(
        cls,
        test: Test,
        source: str,
        ranked: List[RankedOption],
        statistics: Dict[str, int],
    ) -> "ResultsResponse":
        return cls(
            test_id=test.id,
            source=source,
            total_votes=sum(row.votes for row in ranked),
            results=[RankedOptionView(**row.to_dict()) for row in ranked],
            statistics=SessionStatistics(**statistics),
        )

    class Config:
        json_schema_extra = {
            "example": {
                "test_id": "9b2e...",
                "source": "tally",
                "total_votes": 3,
                "results": [
                    {
                        "rank": 1, "option_id": "a1...", "title": {"tr": "Espresso"},
                        "image": "https://cdn.example.com/espresso.jpg", "custom_fields": [],
                        "votes": 2, "percentage": 66.7, "win_rate": 66.66666666666667
                    }
                ],
                "statistics": {
                    "total_sessions": 4, "completed_sessions": 3,
                    "guest_sessions": 1, "user_sessions": 3
                }
            }
        }


class SessionHistoryItem(BaseModel):
    """A session owned by the caller, with its test's identity."""

    test_id: str
    test_slug: str
    test_title: Dict[str, str]
    session: SessionView


class VotedTestItem(BaseModel):
    """A direct vote cast by the caller, with the test and chosen option."""

    test_id: str
    test_slug: str
    test_title: Dict[str, str]
    category: str
    total_votes: int
    option_id: str
    option_title: Optional[Dict[str, str]] = Field(
        None, description="Title of the chosen option, None if it no longer exists"
    )
    option_image: Optional[str] = None
    voted_at: datetime

    @classmethod
    def from_vote(cls, test: Test, voter: Voter) -> "VotedTestItem":
        option = test.find_option(voter.option_id)
        return cls(
            test_id=test.id,
            test_slug=test.slug,
            test_title=test.title.to_dict(),
            category=test.category,
            total_votes=test.total_votes,
            option_id=voter.option_id,
            option_title=option.title.to_dict() if option else None,
            option_image=option.image if option else None,
            voted_at=voter.voted_at,
        )


class HealthResponse(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "unhealthy"] = Field(..., description="Overall health status")
    services: dict = Field(..., description="Status of individual services")
    timestamp: datetime = Field(..., description="Health check timestamp")

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "services": {
                    "storage": "connected",
                    "rabbitmq": "connected",
                    "redis": "connected"
                },
                "timestamp": "2026-01-15T10:30:00Z"
            }
        }


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error kind")
    message: str = Field(..., description="Error message")
    details: dict = Field(default_factory=dict, description="Additional error details")

    class Config:
        json_schema_extra = {
            "example": {
                "error": "invalid_choice",
                "message": "Option 4f1c... is not in the current pair",
                "details": {"session_id": "0d6f...", "current_pair": ["a1...", "c3..."]}
            }
        }
