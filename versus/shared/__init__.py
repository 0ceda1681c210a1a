"""
Shared domain code for the pairwise voting system.

This package contains the storage-independent voting core used by every
service:
- Data models (Test, Option, VoteSession, LocalizedText)
- Option ledger and direct vote tally
- Vote session state machine
- Results aggregation
- Error taxonomy
"""

from .errors import (
    VotingError,
    NotFoundError,
    InactiveError,
    InvalidChoiceError,
    ConflictError,
    UnauthorizedError,
    ValidationError,
    UnavailableError,
    StorageError,
    VersionConflict,
    StorageUnavailable,
)
from .models import (
    Language,
    LocalizedText,
    CustomField,
    Option,
    Voter,
    TestStats,
    VoteSession,
    SessionState,
    SiteSettings,
    Test,
    new_test,
    build_option,
    localized_text,
    utc_now,
)
from .results import ResultSource, RankedOption

__all__ = [
    'VotingError',
    'NotFoundError',
    'InactiveError',
    'InvalidChoiceError',
    'ConflictError',
    'UnauthorizedError',
    'ValidationError',
    'UnavailableError',
    'StorageError',
    'VersionConflict',
    'StorageUnavailable',
    'Language',
    'LocalizedText',
    'CustomField',
    'Option',
    'Voter',
    'TestStats',
    'VoteSession',
    'SessionState',
    'SiteSettings',
    'Test',
    'new_test',
    'build_option',
    'localized_text',
    'utc_now',
    'ResultSource',
    'RankedOption',
]

__version__ = '1.0.0'
