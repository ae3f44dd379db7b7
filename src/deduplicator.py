import hashlib
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from data_classes import CATEGORY_RANK, Candidate, Category, Finding, Location
from patterns_registry import PatternRegistry

logger = logging.getLogger(__name__)


def compute_fingerprint(category: Category, value_digest: str) -> str:
    return hashlib.sha256(f"{category.value}:{value_digest}".encode("utf-8")).hexdigest()


def candidate_rank(candidate: Candidate) -> Tuple[int, int]:
    return int(candidate.severity), CATEGORY_RANK[candidate.category]


def sort_findings(findings: Iterable[Finding]) -> List[Finding]:
    """severity descending, then category tier, then discovery order, fingerprint as the last tie-break"""
    return sorted(
        findings,
        key=lambda f: (-int(f.severity), -CATEGORY_RANK[f.category], f.first_seen_order, f.fingerprint),
    )


def _overlaps(a: Tuple[int, int], b: Tuple[int, int]) -> bool:
    return a[0] < b[1] and b[0] < a[1]


class Deduplicator:
    """Merges per-commit candidates into the canonical, fingerprint keyed finding set"""

    def __init__(self, registry: Optional[PatternRegistry] = None):
        self.registry = registry or PatternRegistry()

    def resolve_overlaps(self, candidates: List[Candidate]) -> List[Candidate]:
        """
        Drops lower ranked matches that cover the same text as a higher ranked one
        on the same line. Survivors keep their original (registry) order.
        """

        by_line: Dict[Tuple[str, int], List[Tuple[int, Candidate]]] = {}
        for index, candidate in enumerate(candidates):
            key = (candidate.file_path, candidate.line_number)
            by_line.setdefault(key, []).append((index, candidate))

        kept: List[Tuple[int, Candidate]] = []
        for group in by_line.values():
            accepted: List[Tuple[int, Candidate]] = []
            # reverse sorting stays stable, equal ranks keep registry order
            ranked = sorted(group, key=lambda item: candidate_rank(item[1]), reverse=True)
            for index, candidate in ranked:
                if any(_overlaps(candidate.span, other.span) for _, other in accepted):
                    logger.debug(
                        f"Dropping {candidate.pattern_id} at {candidate.file_path}:{candidate.line_number}, "
                        f"covered by a higher severity match"
                    )
                    continue
                accepted.append((index, candidate))
            kept.extend(accepted)

        return [candidate for _, candidate in sorted(kept, key=lambda item: item[0])]

    def absorb(
        self,
        findings: Dict[str, Finding],
        candidates: List[Candidate],
        commit_id: str,
        order: int,
    ) -> int:
        """
        Folds the candidates of one commit into findings (mutated in place).

        order is the traversal sequence number of the commit. Returns the number of
        new findings that were created.
        """

        created = 0
        for candidate in self.resolve_overlaps(candidates):
            fingerprint = compute_fingerprint(candidate.category, candidate.value_digest)
            location = Location(commit_id, candidate.file_path, candidate.line_number)
            finding = findings.get(fingerprint)

            if finding is None:
                pattern = self.registry.get(candidate.pattern_id)
                findings[fingerprint] = Finding(
                    fingerprint=fingerprint,
                    category=candidate.category,
                    severity=candidate.severity,
                    first_seen_commit=commit_id,
                    first_seen_order=order,
                    pattern_id=candidate.pattern_id,
                    description=pattern.description if pattern else candidate.pattern_id,
                    remediation=pattern.remediation if pattern else "",
                    preview=candidate.matched_text,
                    locations=[location],
                )
                created += 1
                continue

            if location not in finding.locations:
                finding.locations.append(location)
            if candidate.severity > finding.severity:
                pattern = self.registry.get(candidate.pattern_id)
                finding.severity = candidate.severity
                finding.pattern_id = candidate.pattern_id
                if pattern:
                    finding.description = pattern.description
                    finding.remediation = pattern.remediation

        return created
