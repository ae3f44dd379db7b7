import re
import hashlib
import logging
from typing import List, Optional

from data_classes import Candidate
from patterns_registry import PatternRegistry, is_likely_test_or_example, should_scan_file

logger = logging.getLogger(__name__)

HUNK_HEADER_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
DIFF_GIT_RE = re.compile(r'^diff --git "?a/(.*?)"? "?b/(.*?)"?$')

PREVIEW_LENGTH = 12
UNKNOWN_PATH = "<unknown>"


def normalize_value(value: str) -> str:
    return value.strip().strip("\"'")


def value_digest(value: str) -> str:
    return hashlib.sha256(normalize_value(value).encode("utf-8")).hexdigest()


def redact_preview(value: str) -> str:
    """
    Returns a fixed-length preview of a matched value.

    At most a quarter of the value (never more than 4 chars) is revealed,
    the rest is masked, so the full secret can never be rebuilt from it.
    """
    value = normalize_value(value)
    shown = min(4, len(value) // 4)
    return (value[:shown] + "*" * PREVIEW_LENGTH)[:PREVIEW_LENGTH]


def _strip_path_prefix(path: str) -> str:
    path = path.split("\t")[0].strip().strip('"')
    if path.startswith(("a/", "b/")):
        return path[2:]
    return path


class DiffScanner:
    """Applies the pattern registry to the added lines of one commit's diff"""

    def __init__(self, registry: Optional[PatternRegistry] = None, skip_test_files: bool = False):
        self.registry = registry or PatternRegistry()
        self.skip_test_files = skip_test_files

    def scan(
        self, commit_id: str, diff_text: str, warnings: Optional[List[str]] = None
    ) -> List[Candidate]:
        """
        Scans a unified git diff and returns the candidates found on added lines.

        Hunk line counts are tracked, so an added line that itself starts with "++"
        is never read as a file header. A malformed hunk only skips its file entry.
        """

        candidates: List[Candidate] = []
        file_path = UNKNOWN_PATH
        malformed = False
        scannable = True
        old_left = new_left = 0
        new_line = 0

        for raw in diff_text.split("\n"):
            line = raw[:-1] if raw.endswith("\r") else raw

            if old_left > 0 or new_left > 0:
                prefix = line[:1]
                if prefix == "+":
                    if scannable:
                        self._scan_line(commit_id, file_path, new_line, line[1:], candidates)
                    new_line += 1
                    new_left -= 1
                elif prefix == "-":
                    old_left -= 1
                elif prefix == " " or line == "":
                    new_line += 1
                    old_left -= 1
                    new_left -= 1
                elif prefix == "\\":
                    continue
                elif line.startswith("diff --git "):
                    # hunk was shorter than its header claimed, the next entry still counts
                    self._warn(
                        warnings,
                        commit_id,
                        file_path,
                        "truncated hunk",
                        "lines before the next file entry kept",
                    )
                    old_left = new_left = 0
                else:
                    self._warn(warnings, commit_id, file_path, "unexpected line inside hunk")
                    malformed = True
                    old_left = new_left = 0
                if not line.startswith("diff --git "):
                    continue

            if line.startswith("diff --git "):
                match = DIFF_GIT_RE.match(line)
                file_path = match.group(2) if match else UNKNOWN_PATH
                malformed = False
                scannable = self._is_scannable(file_path)
                continue

            if malformed or line.startswith("\\") or line.startswith("--- "):
                continue

            if line.startswith("+++ "):
                path = line[4:].split("\t")[0].strip()
                if path != "/dev/null":
                    file_path = _strip_path_prefix(path)
                    scannable = self._is_scannable(file_path)
                continue

            if line.startswith("@@"):
                match = HUNK_HEADER_RE.match(line)
                if not match:
                    self._warn(warnings, commit_id, file_path, "malformed hunk header")
                    malformed = True
                    continue
                old_left = int(match.group(2)) if match.group(2) is not None else 1
                new_line = int(match.group(3))
                new_left = int(match.group(4)) if match.group(4) is not None else 1

        logger.debug(f"Commit {commit_id[:8]}: {len(candidates)} candidates")
        return candidates

    def _is_scannable(self, file_path: str) -> bool:
        if not should_scan_file(file_path):
            logger.debug(f"Skipping non-scannable file: {file_path}")
            return False
        if self.skip_test_files and is_likely_test_or_example(file_path):
            logger.debug(f"Skipping test/example file: {file_path}")
            return False
        return True

    def _scan_line(
        self,
        commit_id: str,
        file_path: str,
        line_number: int,
        text: str,
        candidates: List[Candidate],
    ) -> None:
        for pattern in self.registry.patterns():
            for start, end, value in pattern.match(text):
                candidates.append(
                    Candidate(
                        pattern_id=pattern.id,
                        category=pattern.category,
                        commit_id=commit_id,
                        file_path=file_path,
                        line_number=line_number,
                        matched_text=redact_preview(value),
                        severity=pattern.default_severity,
                        value_digest=value_digest(value),
                        span=(start, end),
                    )
                )

    def _warn(
        self,
        warnings: Optional[List[str]],
        commit_id: str,
        file_path: str,
        reason: str,
        outcome: str = "rest of the file entry skipped",
    ):
        message = f"{commit_id[:12]}: {reason} in {file_path}, {outcome}"
        logger.warning(message)
        if warnings is not None:
            warnings.append(message)
