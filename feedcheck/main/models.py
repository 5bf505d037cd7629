"""Data model shared by the validator, the discovery engine and the servers.

Attempts, errors and discovery candidates are immutable records; a
``ValidationResult`` is assembled by the orchestrator and handed to the cache,
which keeps its own copy.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ErrorKind(str, Enum):
    NETWORK = "network_error"
    CROSS_ORIGIN = "cors_error"
    TIMEOUT = "timeout_error"
    PARSE = "parse_error"
    INVALID_FORMAT = "invalid_format"
    NOT_FOUND = "not_found"
    SERVER = "server_error"
    UNKNOWN = "unknown_error"


class ValidationStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    CROSS_ORIGIN_ERROR = "cors_error"
    NOT_FOUND = "not_found"
    SERVER_ERROR = "server_error"
    PARSE_ERROR = "parse_error"
    CHECKING = "checking"
    DISCOVERY_REQUIRED = "discovery_required"
    DISCOVERY_IN_PROGRESS = "discovery_in_progress"


class AttemptMethod(str, Enum):
    DIRECT = "direct"
    RETRY = "retry"
    RELAY = "relay"


class FinalMethod(str, Enum):
    DIRECT = "direct"
    RELAY = "relay"
    DISCOVERY = "discovery"


class DiscoveryMethod(str, Enum):
    DIRECT_PROBE = "direct_probe"
    LINK_DISCOVERY = "link_discovery"
    HTML_PARSING = "html_parsing"
    COMMON_PATHS = "common_paths"


class FeedKind(str, Enum):
    RSS = "rss"
    ATOM = "atom"
    RDF = "rdf"


@dataclass(frozen=True)
class ErrorContext:
    url: Optional[str] = None
    method: Optional[str] = None
    attempt: Optional[int] = None
    status_code: Optional[int] = None


@dataclass(frozen=True)
class ValidationError:
    """A classified failure. ``suggestions`` are meant to be shown as-is."""

    kind: ErrorKind
    message: str
    suggestions: Tuple[str, ...] = ()
    retryable: bool = False
    context: ErrorContext = field(default_factory=ErrorContext)


@dataclass(frozen=True)
class ValidationAttempt:
    attempt_number: int
    timestamp: float
    method: AttemptMethod
    success: bool
    error: Optional[ValidationError] = None
    response_time: float = 0.0
    status_code: Optional[int] = None
    retry_delay: Optional[float] = None
    relay_used: Optional[str] = None


@dataclass(frozen=True)
class DiscoveredFeedCandidate:
    url: str
    discovery_method: DiscoveryMethod
    confidence: float
    title: Optional[str] = None
    description: Optional[str] = None
    kind: Optional[FeedKind] = None


@dataclass
class DiscoveryResult:
    original_url: str
    candidates: List[DiscoveredFeedCandidate] = field(default_factory=list)
    methods_tried: List[DiscoveryMethod] = field(default_factory=list)
    total_attempts: int = 0
    successful_attempts: int = 0
    discovery_time: float = 0.0
    suggestions: List[str] = field(default_factory=list)


@dataclass
class ValidationResult:
    url: str
    status: ValidationStatus = ValidationStatus.CHECKING
    is_valid: bool = False
    title: Optional[str] = None
    description: Optional[str] = None
    validation_attempts: List[ValidationAttempt] = field(default_factory=list)
    total_retries: int = 0
    total_validation_time: float = 0.0
    last_checked: float = 0.0
    response_time: float = 0.0
    status_code: Optional[int] = None
    error: Optional[str] = None
    final_error: Optional[ValidationError] = None
    suggestions: List[str] = field(default_factory=list)
    discovered_candidates: Optional[List[DiscoveredFeedCandidate]] = None
    discovery: Optional[DiscoveryResult] = None
    final_method: Optional[FinalMethod] = None
    requires_user_selection: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-serialisable dict (enums collapse to their values)."""
        return _jsonable(asdict(self))


@dataclass
class ValidationSummary:
    total: int
    valid: int
    invalid: int
    checking: int
    last_validation: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value
