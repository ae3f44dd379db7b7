import json
import sys
import argparse
import logging
from dataclasses import replace
from typing import List

from config import ScanConfig
from data_classes import ScanResult, ScanStatus
from git_commit_source import GitCommitSource
from llm_analyzer import LLMAnalyzer
from ollama_provider import OllamaProvider
from scan_orchestrator import ScanOrchestrator
from state_store import ScanStateStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("git.cmd").setLevel(logging.WARNING)
logging.getLogger("git.util").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Incremental git repository secrets scanner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
        Examples:
            #Quick scan of the latest 100 commits
            %(prog)s scan --repo /path/to/repo
            #Start a resumable scan of a remote repository, then continue it
            %(prog)s start --repo https://github.com/user/repo.git
            %(prog)s continue --repo https://github.com/user/repo.git
            #Experimental full history scan with a 10 minute budget
            %(prog)s scan --repo . --mode deep --time-budget 600
            #Show the saved progress
            %(prog)s status --repo .
            #List every saved scan
            %(prog)s status
        """,
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    scan = subparsers.add_parser("scan", help="Quick (default) or deep scan")
    scan.add_argument("--mode", choices=["quick", "running", "deep"], default="quick")
    scan.add_argument("--n", type=int, default=None, help="Quick scan window (default: QUICK_SCAN_LIMIT)")
    scan.add_argument("--max-commits", type=int, default=None, help="Deep scan commit budget")
    scan.add_argument("--time-budget", type=float, default=None, help="Deep scan budget in seconds")
    scan.add_argument("--stop-at", default=None, help="Commit after which the scan completes")

    start = subparsers.add_parser("start", help="Start (or resume) a running scan")
    start.add_argument("--stop-at", default=None, help="Commit after which the scan completes")

    subparsers.add_parser("continue", help="Continue the saved running or deep scan")
    status = subparsers.add_parser("status", help="Show the saved scan state")

    reset = subparsers.add_parser("reset", help="Delete the saved scan state")
    reset.add_argument("--mode", choices=["running", "deep"], default=None)

    for sub in (scan, start, subparsers.choices["continue"], status, reset):
        # status without a repository lists every saved scan
        sub.add_argument(
            "--repo", required=sub is not status, help="Path to local repository or remote URL"
        )
        sub.add_argument("--state-dir", default=None, help="Directory of the saved scan states")

    for sub in (scan, start, subparsers.choices["continue"], status):
        sub.add_argument(
            "--out",
            default="report.json",
            help="Output file for JSON report (default: report.json)",
        )
        sub.add_argument(
            "--sarif",
            action="store_true",
            help="Export findings in SARIF format (compatible with GitHub, JetBrains IDEs, VS Code)",
        )

    for sub in (scan, start, subparsers.choices["continue"]):
        sub.add_argument("--model", default=None, help="Ollama model used for triage")
        sub.add_argument("--no-triage", action="store_true", help="Skip the LLM triage step")
        sub.add_argument(
            "--start-ollama",
            action="store_true",
            help="Start the Ollama service when it is not running",
        )

    return parser


def build_orchestrator(args: argparse.Namespace, config: ScanConfig) -> ScanOrchestrator:
    triager = None
    if config.triage_enabled and not getattr(args, "no_triage", True):
        provider = OllamaProvider(
            model_name=args.model or config.ollama_model,
            host=config.ollama_host,
            auto_start=args.start_ollama,
        )
        triager = LLMAnalyzer(provider=provider)

    return ScanOrchestrator(
        GitCommitSource(config.repo_cache_dir),
        ScanStateStore(config.state_dir),
        config,
        triager=triager,
    )


def print_summary(result: ScanResult) -> None:
    print(f"Scan {result.status.value}")
    print(f"Repository: {result.target_id}")
    print(f"Mode: {result.mode.value}")
    print(f"Commits processed: {result.commits_processed} ({result.commits_scanned_this_run} this run)")
    if result.commits_remaining_estimate is not None:
        print(f"Commits remaining (estimate): {result.commits_remaining_estimate}")
    print(f"Total findings: {len(result.findings)}")
    for finding in result.findings:
        print(
            f"  - [{finding.severity.name}] {finding.description} {finding.preview} "
            f"in {len(finding.locations)} location(s), first seen {finding.first_seen_commit[:8]}"
        )
    if result.skipped_commits:
        print(f"Skipped commits: {len(result.skipped_commits)}")
    if result.message:
        print(result.message)
    if result.error:
        print(f"Error: {result.error}")


def print_scans(results: List[ScanResult]) -> None:
    print(f"Saved scans: {len(results)}")
    for result in results:
        remaining = result.commits_remaining_estimate
        print(
            f"  - {result.target_id} [{result.mode.value}] {result.status.value}: "
            f"{result.commits_processed} commits, {len(result.findings)} findings"
            + (f", ~{remaining} remaining" if remaining else "")
        )
        if result.error:
            print(f"    Last error: {result.error}")


def load_orchestrator(args: argparse.Namespace) -> ScanOrchestrator:
    config = ScanConfig.from_env()
    if args.state_dir:
        config = replace(config, state_dir=args.state_dir)
    return build_orchestrator(args, config)


def run(args: argparse.Namespace) -> ScanResult:
    orchestrator = load_orchestrator(args)

    try:
        if args.command == "scan":
            return orchestrator.scan(
                args.repo,
                mode=args.mode,
                limit=args.n,
                max_commits=args.max_commits,
                time_budget=args.time_budget,
                stop_at=args.stop_at,
            )
        if args.command == "start":
            return orchestrator.start_running_scan(args.repo, stop_at=args.stop_at)
        if args.command == "continue":
            return orchestrator.continue_scan(args.repo)
        return orchestrator.status(args.repo)
    finally:
        if orchestrator.triager is not None:
            orchestrator.triager.cleanup()


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        if args.command == "reset":
            removed = load_orchestrator(args).reset(args.repo, args.mode)
            print(f"Removed saved state: {', '.join(m.value for m in removed) or 'none'}")
            return

        if args.command == "status" and not args.repo:
            results = load_orchestrator(args).list_scans()
            with open(args.out, "w") as f:
                json.dump([r.to_dict() for r in results], f, indent=2, default=str)
            print_scans(results)
            print(f"Detailed report saved to: {args.out}")
            return

        result = run(args)
        report = result.to_dict()

        with open(args.out, "w") as f:
            json.dump(report, f, indent=2, default=str)

        print_summary(result)
        print(f"Detailed report saved to: {args.out}")

        if args.sarif:
            from sarif_export import export_to_sarif

            sarif_file = export_to_sarif(report, "results.sarif")
            print(f"SARIF exported: {sarif_file}")

    except Exception as e:
        logger.error(f"Scan failed: {e}")
        sys.exit(1)

    if result.status == ScanStatus.FAILED:
        sys.exit(1)


if __name__ == "__main__":
    main()
