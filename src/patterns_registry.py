import re
import math
from collections import Counter
from typing import Iterable, Iterator, List, Optional, Tuple

from data_classes import Category, MatchSpan, Matcher, SecretPattern, Severity

DEFAULT_ENTROPY_THRESHOLD = 3.5
MIN_ENTROPY_LENGTH = 16

SKIP_EXTENSIONS = (
    ".png", ".jpg", ".jpeg", ".gif", ".svg", ".ico", ".pdf", ".zip", ".tar",
    ".gz", ".exe", ".dll", ".so", ".dylib", ".bin", ".dat", ".lock",
)
SKIP_DIRS = (
    "node_modules", "vendor", "dist", "build", ".git", "target", "venv",
    "__pycache__", ".next",
)
TEST_INDICATORS = {
    "test", "tests", "spec", "example", "examples", "sample", "samples",
    "mock", "mocks", "fixture", "fixtures", "demo",
}

# values that are obviously templated rather than real credentials
_PLACEHOLDER_RE = re.compile(r"^(\$\{|\{\{|<|%\()|your[_-]|changeme|x{6,}", re.IGNORECASE)


def shannon_entropy(data: str) -> float:
    """bits per character of the given string"""
    if not data:
        return 0.0
    counts = Counter(data)
    length = len(data)
    return -sum((c / length) * math.log2(c / length) for c in counts.values())


def regex_matcher(regex: str, group: int = 0) -> Matcher:
    compiled = re.compile(regex)

    def match(text: str) -> Iterator[MatchSpan]:
        for m in compiled.finditer(text):
            if m.group(group):
                yield m.start(group), m.end(group), m.group(group)

    return match


def entropy_matcher(
    regex: str,
    group: int = 0,
    threshold: float = DEFAULT_ENTROPY_THRESHOLD,
    min_length: int = MIN_ENTROPY_LENGTH,
) -> Matcher:
    """regex matcher that only keeps values random enough to look like a secret"""
    base = regex_matcher(regex, group)

    def match(text: str) -> Iterator[MatchSpan]:
        for start, end, value in base(text):
            if len(value) < min_length or _PLACEHOLDER_RE.search(value):
                continue
            if shannon_entropy(value) >= threshold:
                yield start, end, value

    return match


def should_scan_file(path: str) -> bool:
    """skips binaries, lock files and vendored or generated directories"""
    lowered = path.lower()
    if lowered.endswith(SKIP_EXTENSIONS):
        return False
    parts = lowered.split("/")[:-1]
    return not any(part in SKIP_DIRS for part in parts)


def is_likely_test_or_example(path: str) -> bool:
    tokens = re.split(r"[/._\-]", path.lower())
    return any(token in TEST_INDICATORS for token in tokens)


class PatternRegistry:
    """
    An immutable registry of secret detection patterns.

    Every pattern is a value carrying its own matcher, so new categories are added
    by passing further SecretPatterns at construction instead of touching the scanner.
    The order of patterns() is the order the diff scanner applies them in.
    """

    def __init__(
        self,
        extra_patterns: Optional[Iterable[SecretPattern]] = None,
        entropy_threshold: float = DEFAULT_ENTROPY_THRESHOLD,
    ):
        patterns = self._load_default_patterns(entropy_threshold)

        for pattern in extra_patterns or []:
            if not isinstance(pattern, SecretPattern):
                raise TypeError("Pattern must be a SecretPattern instance.")
            patterns.append(pattern)

        ids = [p.id for p in patterns]
        duplicates = {i for i in ids if ids.count(i) > 1}
        if duplicates:
            raise ValueError(f"Duplicate pattern ids: {sorted(duplicates)}")

        self._patterns: Tuple[SecretPattern, ...] = tuple(patterns)

    def patterns(self) -> Tuple[SecretPattern, ...]:
        return self._patterns

    def get(self, pattern_id: str) -> Optional[SecretPattern]:
        for pattern in self._patterns:
            if pattern.id == pattern_id:
                return pattern
        return None

    def _load_default_patterns(self, entropy_threshold: float) -> List[SecretPattern]:
        """
        Loads the default SecretPatterns.

        NOTE: The generic entropy rule overlaps most of the specific rules,
              the deduplicator keeps the most severe classification of a value.
              Default severities never decrease along CATEGORY_RANK.
        """

        return [
            SecretPattern(
                id="aws_access_key_id",
                category=Category.AWS_KEY,
                matcher=regex_matcher(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b"),
                default_severity=Severity.CRITICAL,
                description="AWS Access Key ID",
                remediation="Deactivate the key in the AWS IAM console and issue a new one.",
            ),
            SecretPattern(
                id="aws_secret_access_key",
                category=Category.AWS_KEY,
                matcher=regex_matcher(
                    r"(?i)aws_?secret_?(?:access_?)?key[\"']?\s*[:=]\s*[\"']?([A-Za-z0-9/+=]{40})(?![A-Za-z0-9/+=])",
                    group=1,
                ),
                default_severity=Severity.CRITICAL,
                description="AWS Secret Access Key",
                remediation="Rotate the corresponding AWS access key immediately.",
            ),
            SecretPattern(
                id="private_key",
                category=Category.PRIVATE_KEY,
                matcher=regex_matcher(
                    r"-----BEGIN (?:RSA |EC |DSA |OPENSSH |PGP |ENCRYPTED )?PRIVATE KEY(?: BLOCK)?-----"
                ),
                default_severity=Severity.CRITICAL,
                description="Private Cryptographic Key",
                remediation="Remove the key from the repository and regenerate the key pair.",
            ),
            SecretPattern(
                id="stripe_live_key",
                category=Category.GENERIC_TOKEN,
                matcher=regex_matcher(r"\b[rs]k_live_[0-9a-zA-Z]{24,}\b"),
                default_severity=Severity.HIGH,
                description="Stripe Secret Key (Live)",
                remediation="Roll the key in the Stripe dashboard.",
            ),
            SecretPattern(
                id="openai_api_key",
                category=Category.GENERIC_TOKEN,
                matcher=regex_matcher(
                    r"\bsk-(?:proj-[A-Za-z0-9_\-]{40,}|[A-Za-z0-9]{48}\b)"
                ),
                default_severity=Severity.HIGH,
                description="OpenAI API Key",
                remediation="Revoke the key in the OpenAI dashboard and generate a new one.",
            ),
            SecretPattern(
                id="anthropic_api_key",
                category=Category.GENERIC_TOKEN,
                matcher=regex_matcher(r"\bsk-ant-[a-z]+\d{2}-[A-Za-z0-9_\-]{80,}"),
                default_severity=Severity.HIGH,
                description="Anthropic API Key",
                remediation="Revoke the key in the Anthropic console and generate a new one.",
            ),
            SecretPattern(
                id="sendgrid_api_key",
                category=Category.GENERIC_TOKEN,
                matcher=regex_matcher(r"\bSG\.[A-Za-z0-9_\-]{22}\.[A-Za-z0-9_\-]{43}"),
                default_severity=Severity.HIGH,
                description="SendGrid API Key",
                remediation="Revoke the key in the SendGrid settings.",
            ),
            SecretPattern(
                id="mailchimp_api_key",
                category=Category.GENERIC_TOKEN,
                matcher=regex_matcher(r"\b[0-9a-f]{32}-us[0-9]{1,2}\b"),
                default_severity=Severity.HIGH,
                description="Mailchimp API Key",
                remediation="Disable the key in the Mailchimp account settings.",
            ),
            SecretPattern(
                id="github_token",
                category=Category.GENERIC_TOKEN,
                matcher=regex_matcher(r"\bgh[pousr]_[A-Za-z0-9]{36}\b"),
                default_severity=Severity.HIGH,
                description="GitHub Access Token",
                remediation="Revoke the token in the GitHub developer settings.",
            ),
            SecretPattern(
                id="slack_token",
                category=Category.GENERIC_TOKEN,
                matcher=regex_matcher(r"\bxox[baprs]-[0-9A-Za-z\-]{10,}"),
                default_severity=Severity.HIGH,
                description="Slack Token",
                remediation="Revoke the token in the Slack app configuration.",
            ),
            SecretPattern(
                id="google_api_key",
                category=Category.GENERIC_TOKEN,
                matcher=regex_matcher(r"\bAIza[0-9A-Za-z\-_]{35}"),
                default_severity=Severity.HIGH,
                description="Google API Key",
                remediation="Delete the key in the Google Cloud console and restrict the new one.",
            ),
            SecretPattern(
                id="db_connection_uri",
                category=Category.DB_CONN_STRING,
                matcher=regex_matcher(
                    r"(?i)\b(?:mysql|postgres(?:ql)?|mongodb(?:\+srv)?|redis|amqps?)://[^\s:/@\"']+:[^\s@\"']+@[^\s\"'/]+"
                ),
                default_severity=Severity.HIGH,
                description="Database Connection String with Credentials",
                remediation="Change the database password and load the URI from the environment.",
            ),
            SecretPattern(
                id="oauth_token_assignment",
                category=Category.OAUTH_TOKEN,
                matcher=regex_matcher(
                    r"(?i)\b(?:oauth|access|refresh)[_\-]?token[\"']?\s*[:=]\s*[\"']?([A-Za-z0-9_\-\.]{20,})",
                    group=1,
                ),
                default_severity=Severity.MEDIUM,
                description="OAuth Access or Refresh Token",
                remediation="Revoke the token and regenerate it.",
            ),
            SecretPattern(
                id="google_oauth_token",
                category=Category.OAUTH_TOKEN,
                matcher=regex_matcher(r"\b(?:ya29\.[0-9A-Za-z_\-]{20,}|1//0[0-9A-Za-z_\-]{30,})"),
                default_severity=Severity.MEDIUM,
                description="Google OAuth Access or Refresh Token",
                remediation="Revoke the grant in the Google account security settings.",
            ),
            SecretPattern(
                id="jwt_token",
                category=Category.OAUTH_TOKEN,
                matcher=regex_matcher(
                    r"\beyJ[A-Za-z0-9_\-]{8,}\.eyJ[A-Za-z0-9_\-]{8,}\.[A-Za-z0-9_\-]{8,}"
                ),
                default_severity=Severity.MEDIUM,
                description="JWT Bearer Token",
                remediation="Make sure the token is expired, or revoke the signing key.",
            ),
            SecretPattern(
                id="password_assignment",
                category=Category.GENERIC,
                matcher=regex_matcher(
                    r"(?i)\b(?:password|passwd|pwd)[\"']?\s*[:=]\s*[\"']([^\"'\s]{8,})[\"']",
                    group=1,
                ),
                default_severity=Severity.MEDIUM,
                description="Hardcoded Password",
                remediation="Remove the password from code and use secure configuration.",
            ),
            SecretPattern(
                id="generic_high_entropy",
                category=Category.GENERIC,
                matcher=entropy_matcher(
                    r"(?i)\b[\w.\-]*(?:key|token|secret|passw(?:or)?d|pwd|credential|auth)[\w.\-]*[\"']?\s*[:=]\s*[\"']([^\"'\s]+)[\"']",
                    group=1,
                    threshold=entropy_threshold,
                ),
                default_severity=Severity.LOW,
                description="High entropy value assigned to a secret-like name",
                remediation="Verify whether the value is a credential and rotate it if so.",
            ),
        ]
