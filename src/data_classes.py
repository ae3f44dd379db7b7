from enum import Enum, IntEnum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from dataclasses import dataclass, field, asdict

SCHEMA_VERSION = 1

# (start, end, value) of one match inside a line
MatchSpan = Tuple[int, int, str]
Matcher = Callable[[str], Iterable[MatchSpan]]


class Category(str, Enum):
    AWS_KEY = "AWSKey"
    GENERIC_TOKEN = "GenericToken"
    DB_CONN_STRING = "DBConnString"
    PRIVATE_KEY = "PrivateKey"
    OAUTH_TOKEN = "OAuthToken"
    GENERIC = "Generic"


class Severity(IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


# blast radius ladder, ascending. AWS keys and private keys share the top tier.
CATEGORY_RANK = {
    Category.GENERIC: 0,
    Category.OAUTH_TOKEN: 1,
    Category.GENERIC_TOKEN: 2,
    Category.DB_CONN_STRING: 3,
    Category.AWS_KEY: 4,
    Category.PRIVATE_KEY: 4,
}


class ScanMode(str, Enum):
    QUICK = "quick"
    RUNNING = "running"
    DEEP = "deep"


class ScanStatus(str, Enum):
    NOT_STARTED = "NotStarted"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"


@dataclass(frozen=True)
class SecretPattern:
    """Defines an immutable rule used for detecting secrets in added diff lines"""

    id: str
    category: Category
    matcher: Matcher
    default_severity: Severity
    description: str
    remediation: str = "Rotate the credential and move it to a secret manager."

    def match(self, text: str) -> List[MatchSpan]:
        return list(self.matcher(text))


@dataclass(frozen=True)
class Candidate:
    """A raw, per-commit pattern match. matched_text is always a redacted preview."""

    pattern_id: str
    category: Category
    commit_id: str
    file_path: str
    line_number: int
    matched_text: str
    severity: Severity
    value_digest: str
    span: Tuple[int, int]


@dataclass(frozen=True)
class Location:
    commit_id: str
    file_path: str
    line_number: int


@dataclass
class Finding:
    """Deduplicated secret detection with every location it was seen at"""

    fingerprint: str
    category: Category
    severity: Severity
    first_seen_commit: str
    first_seen_order: int
    pattern_id: str
    description: str
    remediation: str
    preview: str
    locations: List[Location] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["category"] = self.category.value
        data["severity"] = self.severity.name
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Finding":
        return cls(
            fingerprint=data["fingerprint"],
            category=Category(data["category"]),
            severity=Severity[data["severity"]],
            first_seen_commit=data["first_seen_commit"],
            first_seen_order=int(data["first_seen_order"]),
            pattern_id=data["pattern_id"],
            description=data["description"],
            remediation=data["remediation"],
            preview=data["preview"],
            locations=[Location(**loc) for loc in data["locations"]],
        )


@dataclass
class Cursor:
    """
    Traversal position of a resumable scan.

    head is the commit the traversal is anchored to and position counts the
    commits consumed from it in commit source order. last_commit is the last
    commit that was fully absorbed. When stop_at is set the traversal completes
    once that commit is absorbed, across any number of resumed calls.
    """

    head: str
    position: int = 0
    last_commit: Optional[str] = None
    total: Optional[int] = None
    stop_at: Optional[str] = None

    @property
    def remaining(self) -> Optional[int]:
        if self.total is None:
            return None
        return max(self.total - self.position, 0)


@dataclass
class ScanState:
    """Resumability record for one (target, mode) pair"""

    target_id: str
    mode: ScanMode
    status: ScanStatus = ScanStatus.NOT_STARTED
    cursor: Optional[Cursor] = None
    seen_commits: Dict[str, str] = field(default_factory=dict)
    findings: Dict[str, Finding] = field(default_factory=dict)
    commits_processed: int = 0
    warnings: List[str] = field(default_factory=list)
    last_error: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_id": self.target_id,
            "mode": self.mode.value,
            "status": self.status.value,
            "cursor": asdict(self.cursor) if self.cursor else None,
            "seen_commits": dict(self.seen_commits),
            "findings": [f.to_dict() for f in self.findings.values()],
            "commits_processed": self.commits_processed,
            "warnings": list(self.warnings),
            "last_error": self.last_error,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScanState":
        cursor = data["cursor"]
        findings = [Finding.from_dict(f) for f in data["findings"]]
        return cls(
            target_id=data["target_id"],
            mode=ScanMode(data["mode"]),
            status=ScanStatus(data["status"]),
            cursor=Cursor(**cursor) if cursor else None,
            seen_commits=dict(data["seen_commits"]),
            findings={f.fingerprint: f for f in findings},
            commits_processed=int(data["commits_processed"]),
            warnings=list(data["warnings"]),
            last_error=data["last_error"],
            updated_at=data["updated_at"],
        )


@dataclass
class TriageResult:
    findings: List[Finding]
    suppressed: List[str] = field(default_factory=list)
    remediation: Dict[str, str] = field(default_factory=dict)


@dataclass
class ScanResult:
    """Structured result returned by every command of the orchestrator"""

    target_id: str
    mode: ScanMode
    status: ScanStatus
    findings: List[Finding] = field(default_factory=list)
    commits_processed: int = 0
    commits_scanned_this_run: int = 0
    commits_remaining_estimate: Optional[int] = None
    skipped_commits: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    triaged: bool = False
    suppressed: List[str] = field(default_factory=list)
    message: str = ""
    error: Optional[str] = None
    experimental: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_id": self.target_id,
            "mode": self.mode.value,
            "status": self.status.value,
            "findings": [f.to_dict() for f in self.findings],
            "commits_processed": self.commits_processed,
            "commits_scanned_this_run": self.commits_scanned_this_run,
            "commits_remaining_estimate": self.commits_remaining_estimate,
            "skipped_commits": list(self.skipped_commits),
            "warnings": list(self.warnings),
            "triaged": self.triaged,
            "suppressed": list(self.suppressed),
            "message": self.message,
            "error": self.error,
            "experimental": self.experimental,
        }
