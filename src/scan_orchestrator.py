import copy
import os
import time
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Set, TypeVar, Union
from urllib.parse import urlsplit, urlunsplit

from base_commit_source import BaseCommitSource
from config import ScanConfig
from data_classes import Candidate, Cursor, ScanMode, ScanResult, ScanState, ScanStatus
from deduplicator import Deduplicator, compute_fingerprint, sort_findings
from diff_scanner import DiffScanner
from llm_analyzer import LLMAnalyzer
from patterns_registry import PatternRegistry
from scan_errors import (
    ConfigurationError,
    CorruptPersistedState,
    PersistFailure,
    RateLimitedError,
    RecoverableFetchError,
    TargetNotFoundError,
    TriageUnavailable,
)
from scan_registry import RunHandle, ScanRegistry
from state_store import ScanStateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCANNED = "scanned"
MAX_RATE_LIMIT_WAIT = 60.0
MAX_STORED_WARNINGS = 200
DEEP_NOTICE = (
    "Deep mode is experimental and may stop before reaching the end of history. "
    "Progress is saved, resume it with continue."
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_target(target: str) -> str:
    """canonical identity of a scan target: absolute local path or cleaned up remote URL"""

    if not isinstance(target, str) or not target.strip():
        raise ConfigurationError("A repository path or URL is required")

    target = target.strip()
    if target.startswith(("http://", "https://", "ssh://")):
        parts = urlsplit(target)
        path = parts.path.rstrip("/")
        if path.endswith(".git"):
            path = path[: -len(".git")]
        if not parts.netloc or not path:
            raise ConfigurationError(f"Invalid repository URL: {target}")
        return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, "", ""))
    if target.startswith("git@"):
        target = target.rstrip("/")
        return target[: -len(".git")] if target.endswith(".git") else target

    return os.path.abspath(os.path.expanduser(target))


def parse_mode(mode: Union[str, ScanMode]) -> ScanMode:
    try:
        return mode if isinstance(mode, ScanMode) else ScanMode(str(mode).lower())
    except ValueError:
        raise ConfigurationError(f"Unknown scan mode: {mode!r} (expected quick, running or deep)")


def apply_commit(
    state: ScanState,
    commit_id: str,
    candidates: List[Candidate],
    deduplicator: Deduplicator,
    marker: str = SCANNED,
    warnings: Iterable[str] = (),
) -> ScanState:
    """
    Pure step function of a traversal: returns the state after commit_id.

    A commit that is already in seen_commits only moves the cursor. Findings touched by
    this commit are copied before they change, the input state is never mutated.
    """

    cursor = state.cursor
    if cursor is not None:
        cursor = replace(cursor, position=cursor.position + 1, last_commit=commit_id)

    if commit_id in state.seen_commits:
        return replace(state, cursor=cursor, updated_at=_now())

    findings = dict(state.findings)
    if marker == SCANNED:
        for candidate in candidates:
            fingerprint = compute_fingerprint(candidate.category, candidate.value_digest)
            if fingerprint in findings and findings[fingerprint] is state.findings.get(fingerprint):
                findings[fingerprint] = copy.deepcopy(findings[fingerprint])
        deduplicator.absorb(findings, candidates, commit_id, order=state.commits_processed)

    seen_commits = dict(state.seen_commits)
    seen_commits[commit_id] = marker

    return replace(
        state,
        cursor=cursor,
        seen_commits=seen_commits,
        findings=findings,
        commits_processed=state.commits_processed + 1,
        warnings=(list(state.warnings) + list(warnings))[-MAX_STORED_WARNINGS:],
        updated_at=_now(),
    )


@dataclass
class RunStats:
    """bookkeeping of one invocation"""

    state: ScanState
    persisted: ScanState
    scanned: int = 0
    skipped: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    exhausted: bool = False
    cancelled: bool = False


class ScanOrchestrator:
    """
    Drives Quick, Running and Deep scans of a target and exposes the command surface
    (scan, start_running_scan, continue_scan, status, list_scans, reset, cancel).

    Commits are processed strictly in the order the commit source returns them.
    Resumable modes persist the state after every checkpoint, so an interruption
    loses at most the commits absorbed since the last one.
    """

    def __init__(
        self,
        commit_source: BaseCommitSource,
        store: Optional[ScanStateStore] = None,
        config: Optional[ScanConfig] = None,
        registry: Optional[PatternRegistry] = None,
        triager: Optional[LLMAnalyzer] = None,
        run_registry: Optional[ScanRegistry] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or ScanConfig()
        self.config.validate()
        self.source = commit_source
        self.store = store or ScanStateStore(self.config.state_dir)
        self.pattern_registry = registry or PatternRegistry(
            entropy_threshold=self.config.entropy_threshold
        )
        self.scanner = DiffScanner(self.pattern_registry, skip_test_files=self.config.skip_test_files)
        self.deduplicator = Deduplicator(self.pattern_registry)
        self.triager = triager
        self.run_registry = run_registry or ScanRegistry()
        self._sleep = sleep
        self._clock = clock

    # command surface

    def scan(
        self,
        target: str,
        mode: Union[str, ScanMode] = ScanMode.QUICK,
        limit: Optional[int] = None,
        max_commits: Optional[int] = None,
        time_budget: Optional[float] = None,
        stop_at: Optional[str] = None,
    ) -> ScanResult:
        mode = parse_mode(mode)
        target_id = normalize_target(target)

        if mode == ScanMode.RUNNING:
            return self.start_running_scan(target_id, stop_at=stop_at)
        if mode == ScanMode.QUICK:
            if limit is not None and limit < 1:
                raise ConfigurationError("Quick scan limit must be at least 1")
            return self._quick_scan(target_id, limit or self.config.quick_scan_limit)

        if max_commits is not None and max_commits < 1:
            raise ConfigurationError("max_commits must be at least 1")
        if time_budget is not None and time_budget <= 0:
            raise ConfigurationError("time_budget must be positive")
        return self._deep_scan(target_id, max_commits, time_budget, stop_at)

    def start_running_scan(self, target: str, stop_at: Optional[str] = None) -> ScanResult:
        target_id = normalize_target(target)
        handle = self.run_registry.acquire(target_id, ScanMode.RUNNING)
        try:
            state = self.store.load(target_id, ScanMode.RUNNING)
            if state.status == ScanStatus.COMPLETED:
                return self._result(
                    state,
                    message="Running scan already completed, use continue to scan new commits.",
                )
            return self._advance(
                target_id, state, handle, self.config.running_batch_size, None, stop_at
            )
        finally:
            self.run_registry.release(handle)

    def continue_scan(self, target: str) -> ScanResult:
        target_id = normalize_target(target)
        running = self.store.load(target_id, ScanMode.RUNNING)
        deep = self.store.load(target_id, ScanMode.DEEP)

        resumable = (ScanStatus.IN_PROGRESS, ScanStatus.FAILED)
        if running.status in resumable or (
            running.status == ScanStatus.COMPLETED and deep.status not in resumable
        ):
            mode = ScanMode.RUNNING
        elif deep.status != ScanStatus.NOT_STARTED:
            mode = ScanMode.DEEP
        else:
            return ScanResult(
                target_id=target_id,
                mode=ScanMode.RUNNING,
                status=ScanStatus.NOT_STARTED,
                message="No previous scan found for this repository.",
            )

        handle = self.run_registry.acquire(target_id, mode)
        try:
            # reload, the record may have moved on before the handle was taken
            state = self.store.load(target_id, mode)
            if mode == ScanMode.DEEP:
                max_commits, deadline = self._deep_budget(None, None)
            else:
                max_commits, deadline = self.config.running_batch_size, None

            if state.status == ScanStatus.COMPLETED:
                return self._catch_up(target_id, state, handle, max_commits, deadline)
            return self._advance(target_id, state, handle, max_commits, deadline, None)
        finally:
            self.run_registry.release(handle)

    def status(self, target: str) -> ScanResult:
        target_id = normalize_target(target)
        active = self.run_registry.get(target_id)

        for mode in (ScanMode.RUNNING, ScanMode.DEEP):
            state = self.store.load(target_id, mode)
            if state.status == ScanStatus.NOT_STARTED:
                continue
            message = ""
            if active is not None and active.mode == mode:
                message = "Scan is running, results reflect the last checkpoint."
            elif state.status == ScanStatus.FAILED:
                message = f"Last run failed: {state.last_error}. Resume with continue."
            return self._result(state, message=message)

        return ScanResult(target_id=target_id, mode=ScanMode.RUNNING, status=ScanStatus.NOT_STARTED)

    def list_scans(self) -> List[ScanResult]:
        """one result per saved running or deep scan in the store, ordered by target and mode"""

        results = []
        for state in self.store.list_states():
            active = self.run_registry.get(state.target_id)
            message = ""
            if active is not None and active.mode == state.mode:
                message = "Scan is running, results reflect the last checkpoint."
            results.append(self._result(state, message=message, error=state.last_error))
        return sorted(results, key=lambda r: (r.target_id, r.mode.value))

    def reset(self, target: str, mode: Optional[Union[str, ScanMode]] = None) -> List[ScanMode]:
        target_id = normalize_target(target)
        parsed = parse_mode(mode) if mode is not None else None
        if parsed == ScanMode.QUICK:
            raise ConfigurationError("Quick scans keep no state to reset")
        handle = self.run_registry.acquire(target_id, parsed or ScanMode.RUNNING)
        try:
            return self.store.reset(target_id, parsed)
        finally:
            self.run_registry.release(handle)

    def cancel(self, target: str) -> bool:
        return self.run_registry.cancel(normalize_target(target))

    # modes

    def _quick_scan(self, target_id: str, limit: int) -> ScanResult:
        known = self._known_commits(target_id)
        handle = self.run_registry.acquire(target_id, ScanMode.QUICK)
        state = ScanState(target_id=target_id, mode=ScanMode.QUICK, status=ScanStatus.IN_PROGRESS)
        stats = RunStats(state=state, persisted=state)

        try:
            head = self._with_retries(lambda: self.source.resolve_head(target_id), "resolving HEAD")
            stats.state = replace(state, cursor=Cursor(head=head))
            self._traverse(target_id, stats, handle, limit, None, known=known, persist=False)
        except (RecoverableFetchError, TargetNotFoundError) as e:
            logger.error(f"Quick scan of {target_id} failed: {e}")
            stats.state = replace(stats.state, status=ScanStatus.FAILED, last_error=str(e))
            return self._result(stats.state, stats, error=str(e))
        finally:
            self.run_registry.release(handle)

        stats.state = replace(stats.state, status=ScanStatus.COMPLETED)
        message = f"Scanned {stats.scanned} of the latest {limit} commits."
        if stats.cancelled:
            message += " Cancelled before the window was complete."
        return self._finish(stats, message, remaining=0)

    def _deep_scan(
        self,
        target_id: str,
        max_commits: Optional[int],
        time_budget: Optional[float],
        stop_at: Optional[str],
    ) -> ScanResult:
        handle = self.run_registry.acquire(target_id, ScanMode.DEEP)
        try:
            state = self.store.load(target_id, ScanMode.DEEP)
            if state.status == ScanStatus.COMPLETED:
                return self._result(
                    state,
                    message="Deep scan already completed, use continue to scan new commits.",
                )
            max_commits, deadline = self._deep_budget(max_commits, time_budget)
            return self._advance(target_id, state, handle, max_commits, deadline, stop_at)
        finally:
            self.run_registry.release(handle)

    def _deep_budget(self, max_commits: Optional[int], time_budget: Optional[float]):
        max_commits = max_commits or self.config.deep_max_commits
        time_budget = time_budget or self.config.deep_time_budget
        deadline = self._clock() + time_budget if time_budget else None
        return max_commits, deadline

    def _catch_up(
        self,
        target_id: str,
        state: ScanState,
        handle: RunHandle,
        max_commits: Optional[int],
        deadline: Optional[float],
    ) -> ScanResult:
        """
        re-anchors a completed scan at the current HEAD. The walk ends at the previous
        head when it is still an ancestor; seen commits are skipped on the way
        """

        try:
            head = self._with_retries(lambda: self.source.resolve_head(target_id), "resolving HEAD")
        except (RecoverableFetchError, TargetNotFoundError) as e:
            return self._result(state, error=str(e), status=ScanStatus.FAILED)

        stop_at = None
        if state.cursor is not None:
            if head == state.cursor.head:
                return self._result(state, message="No new commits to scan since last scan.")
            old_head = state.cursor.head
            try:
                new_commits = self._with_retries(
                    lambda: self.source.list_commits_since(target_id, old_head, head),
                    "listing new commits",
                )
                logger.info(f"{len(new_commits)} new commits since {old_head[:8]}")
            except TargetNotFoundError:
                # rewritten history, the old head is gone; seen commits are still skipped
                logger.warning(f"Previous head {old_head[:8]} no longer exists, walking the whole history")
            except RecoverableFetchError as e:
                return self._result(state, error=str(e), status=ScanStatus.FAILED)
            else:
                if not new_commits:
                    return self._result(state, message="No new commits to scan since last scan.")
                stop_at = old_head

        state = replace(state, cursor=None, status=ScanStatus.IN_PROGRESS)
        return self._advance(target_id, state, handle, max_commits, deadline, stop_at)

    def _advance(
        self,
        target_id: str,
        state: ScanState,
        handle: RunHandle,
        max_commits: Optional[int],
        deadline: Optional[float],
        stop_at: Optional[str],
    ) -> ScanResult:
        stats = RunStats(state=state, persisted=state)
        try:
            if stats.state.cursor is None:
                head = self._with_retries(lambda: self.source.resolve_head(target_id), "resolving HEAD")
                total = self._with_retries(
                    lambda: self.source.count_commits(target_id, head), "counting commits"
                )
                stats.state = replace(
                    stats.state, cursor=Cursor(head=head, total=total, stop_at=stop_at)
                )
                logger.info(f"Anchored {state.mode.value} scan of {target_id} at {head[:8]} ({total} commits)")
            elif stop_at:
                stats.state = replace(stats.state, cursor=replace(stats.state.cursor, stop_at=stop_at))

            stats.state = replace(stats.state, status=ScanStatus.IN_PROGRESS, last_error=None)
            self._checkpoint(stats)

            self._traverse(target_id, stats, handle, max_commits, deadline)

            status = ScanStatus.COMPLETED if stats.exhausted else ScanStatus.IN_PROGRESS
            stats.state = replace(stats.state, status=status, updated_at=_now())
            self._checkpoint(stats)

        except PersistFailure as e:
            logger.error(f"Stopping {state.mode.value} scan of {target_id}: {e}")
            return self._failed(stats, e)

        except (RecoverableFetchError, TargetNotFoundError) as e:
            logger.error(f"{state.mode.value.title()} scan of {target_id} failed: {e}")
            stats.state = replace(stats.state, status=ScanStatus.FAILED, last_error=str(e))
            try:
                self._checkpoint(stats)
            except PersistFailure as pe:
                logger.error(f"Could not record the failure: {pe}")
            return self._failed(stats, e)

        except Exception as e:
            # the last absorbed state is consistent, leave it behind as Failed
            stats.state = replace(stats.state, status=ScanStatus.FAILED, last_error=repr(e))
            try:
                self._checkpoint(stats)
            except PersistFailure as pe:
                logger.error(f"Could not record the failure: {pe}")
            raise

        if stats.cancelled:
            message = "Scan cancelled, resume it with continue."
        elif stats.exhausted:
            message = f"{state.mode.value.title()} scan completed."
        else:
            message = "Scan paused at its commit budget, resume it with continue."
        return self._finish(stats, message)

    def _traverse(
        self,
        target_id: str,
        stats: RunStats,
        handle: RunHandle,
        max_commits: Optional[int],
        deadline: Optional[float],
        known: Optional[Set[str]] = None,
        persist: bool = True,
    ) -> None:
        """
        Walks the commit source from the cursor, absorbing commit by commit.

        Only commits scanned in this call count against max_commits. Commits found in
        seen_commits just move the cursor; they are not checkpointed on their own since
        replaying them is harmless. The walk ends after the cursor's stop_at commit.
        """

        pending = 0
        batch_size = self.config.running_batch_size
        stop_at = stats.state.cursor.stop_at if stats.state.cursor else None

        while not stats.exhausted and not self._should_stop(stats, handle, max_commits, deadline):
            commit_ids = self._with_retries(
                lambda: self.source.fetch_commits(target_id, stats.state.cursor, batch_size),
                "listing commits",
            )
            if not commit_ids:
                stats.exhausted = True
                break

            for commit_id in commit_ids:
                if self._should_stop(stats, handle, max_commits, deadline):
                    break

                if known and commit_id in known:
                    logger.info(f"Reached {commit_id[:8]}, already covered by a resumable scan")
                    stats.exhausted = True
                    break

                if commit_id in stats.state.seen_commits:
                    stats.state = apply_commit(stats.state, commit_id, [], self.deduplicator)
                else:
                    commit_warnings: List[str] = []
                    candidates, marker = self._scan_commit(target_id, commit_id, commit_warnings)
                    stats.state = apply_commit(
                        stats.state, commit_id, candidates, self.deduplicator, marker, commit_warnings
                    )
                    stats.scanned += 1
                    stats.warnings.extend(commit_warnings)
                    if marker != SCANNED:
                        stats.skipped.append(commit_id)
                    pending += 1
                    logger.info(
                        f"Processed commit {stats.state.commits_processed}: {commit_id[:8]} "
                        f"({len(candidates)} candidates)"
                    )

                    if persist and pending >= self.config.checkpoint_every:
                        self._checkpoint(stats)
                        pending = 0

                if stop_at and commit_id == stop_at:
                    stats.exhausted = True
                    break
            else:
                if len(commit_ids) < batch_size:
                    stats.exhausted = True

    def _should_stop(
        self,
        stats: RunStats,
        handle: RunHandle,
        max_commits: Optional[int],
        deadline: Optional[float],
    ) -> bool:
        if handle.cancelled:
            stats.cancelled = True
            return True
        if max_commits is not None and stats.scanned >= max_commits:
            return True
        if deadline is not None and self._clock() >= deadline:
            logger.info("Time budget exhausted")
            return True
        return False

    def _scan_commit(self, target_id: str, commit_id: str, warnings: List[str]):
        try:
            diff_text = self._with_retries(
                lambda: self.source.fetch_diff(target_id, commit_id),
                f"fetching diff of {commit_id[:8]}",
            )
        except (RecoverableFetchError, TargetNotFoundError) as e:
            logger.warning(f"Skipping commit {commit_id[:8]}: {e}")
            return [], f"skipped: {e}"

        return self.scanner.scan(commit_id, diff_text, warnings), SCANNED

    def _with_retries(self, fn: Callable[[], T], what: str) -> T:
        attempt = 0
        while True:
            try:
                return fn()
            except RecoverableFetchError as e:
                attempt += 1
                if attempt > self.config.fetch_retries:
                    raise
                delay = self.config.retry_backoff * attempt
                if isinstance(e, RateLimitedError) and e.retry_after:
                    delay = min(e.retry_after, MAX_RATE_LIMIT_WAIT)
                logger.warning(
                    f"{what} failed ({e}), retrying in {delay:.1f}s "
                    f"({attempt}/{self.config.fetch_retries})"
                )
                self._sleep(delay)

    def _checkpoint(self, stats: RunStats) -> None:
        self.store.save(stats.state)
        stats.persisted = stats.state

    def _known_commits(self, target_id: str) -> Set[str]:
        known: Set[str] = set()
        for mode in (ScanMode.RUNNING, ScanMode.DEEP):
            try:
                known.update(self.store.load(target_id, mode).seen_commits)
            except CorruptPersistedState as e:
                logger.warning(f"Ignoring {mode.value} state for the quick scan early exit: {e}")
        return known

    # results

    def _failed(self, stats: RunStats, error: Exception) -> ScanResult:
        persisted = stats.persisted
        cursor = persisted.cursor
        position = f"{cursor.last_commit or cursor.head} (position {cursor.position})" if cursor else "none"
        detail = (
            f"{error} [target={persisted.target_id}, mode={persisted.mode.value}, "
            f"last checkpoint={position}]"
        )
        result = self._result(persisted, stats, error=detail, status=ScanStatus.FAILED)
        if persisted.mode == ScanMode.DEEP:
            result.message = DEEP_NOTICE
        return result

    def _finish(self, stats: RunStats, message: str, remaining: Optional[int] = None) -> ScanResult:
        result = self._result(stats.state, stats, message=message)
        if remaining is not None:
            result.commits_remaining_estimate = remaining
        if stats.state.mode == ScanMode.DEEP:
            result.message = f"{message} {DEEP_NOTICE}"

        if self.triager is None or not result.findings:
            return result

        try:
            triage = self.triager.triage(result.findings)
        except TriageUnavailable as e:
            logger.warning(f"Triage unavailable, returning untriaged findings: {e}")
            result.warnings.append(f"triage unavailable: {e}")
            return result

        # triage output is presentation only, persisted findings stay untouched
        result.findings = [
            replace(f, remediation=triage.remediation.get(f.fingerprint, f.remediation))
            for f in triage.findings
        ]
        result.suppressed = list(triage.suppressed)
        result.triaged = True
        return result

    def _result(
        self,
        state: ScanState,
        stats: Optional[RunStats] = None,
        message: str = "",
        error: Optional[str] = None,
        status: Optional[ScanStatus] = None,
    ) -> ScanResult:
        status = status or state.status
        if status == ScanStatus.COMPLETED:
            remaining = 0
        else:
            remaining = state.cursor.remaining if state.cursor else None

        return ScanResult(
            target_id=state.target_id,
            mode=state.mode,
            status=status,
            findings=sort_findings(state.findings.values()),
            commits_processed=state.commits_processed,
            commits_scanned_this_run=stats.scanned if stats else 0,
            commits_remaining_estimate=remaining,
            skipped_commits=list(stats.skipped) if stats else [],
            warnings=list(stats.warnings) if stats else [],
            message=message,
            error=error,
            experimental=state.mode == ScanMode.DEEP,
        )
