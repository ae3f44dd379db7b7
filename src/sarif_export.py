import json
from typing import Dict, Any, List


def export_to_sarif(report: Dict[str, Any], output_file: str = "results.sarif") -> str:
    """Exports a scan result (ScanResult.to_dict()) to the SARIF format"""

    sarif = {
        "$schema": "https://raw.githubusercontent.com/oasis-tcs/sarif-spec/master/Schemata/sarif-schema-2.1.0.json",
        "version": "2.1.0",
        "runs": [
            {
                "tool": {
                    "driver": {
                        "name": "Git-Secrets-Scanner",
                        "version": "1.0.0",
                        "rules": _generate_rules(report),
                    }
                },
                "results": _generate_results(report),
                "properties": {
                    "target": report.get("target_id"),
                    "mode": report.get("mode"),
                    "status": report.get("status"),
                    "commitsProcessed": report.get("commits_processed", 0),
                },
            }
        ],
    }

    with open(output_file, "w", encoding="utf-8") as f:
        json.dump(sarif, f, indent=2)

    return output_file


def _generate_rules(report: Dict[str, Any]) -> List[Dict]:
    """Function to generate SARIF rule definitions, one per pattern that produced a finding"""

    rules_by_id: Dict[str, Dict] = {}

    for finding in report.get("findings", []):
        pattern_id = finding.get("pattern_id", "unknown")
        if pattern_id in rules_by_id:
            continue
        description = finding.get("description", pattern_id.replace("_", " "))
        rules_by_id[pattern_id] = {
            "id": pattern_id,
            "name": pattern_id.replace("_", " ").title(),
            "shortDescription": {"text": f"Detects {description}"},
            "fullDescription": {
                "text": f"This rule identifies potential {description} introduced by a commit."
            },
            "help": {"text": finding.get("remediation") or "Rotate the credential."},
            "defaultConfiguration": {"level": _map_level(finding.get("severity", "LOW"))},
            "properties": {
                "tags": ["security", "secrets", finding.get("category", "Generic")],
                "precision": "high",
            },
        }

    return [rules_by_id[rule_id] for rule_id in sorted(rules_by_id)]


def _generate_results(report: Dict[str, Any]) -> List[Dict]:
    """Generate a list of SARIF result objects from the scan report findings

    One result is created per finding, carrying:
     - rule reference
     - severity level
     - message with the redacted preview
     - every location the secret was added at
     - the finding fingerprint for deduplication across runs
    """
    results = []

    for finding in report.get("findings", []):
        locations = finding.get("locations", [])
        result = {
            "ruleId": finding.get("pattern_id", "unknown"),
            "level": _map_level(finding.get("severity", "LOW")),
            "message": {
                "text": f"{finding.get('description', 'Potential secret')} ({finding.get('preview', '')})"
            },
            "locations": [
                {
                    "physicalLocation": {
                        "artifactLocation": {
                            "uri": loc.get("file_path", "unknown"),
                            "uriBaseId": "SRCROOT",
                        },
                        "region": {"startLine": loc.get("line_number") or 1},
                    },
                    "properties": {"commit": loc.get("commit_id", "")[:8]},
                }
                for loc in locations
            ],
            "partialFingerprints": {"secretFingerprint/v1": finding.get("fingerprint", "")},
            "properties": {
                "category": finding.get("category", "Generic"),
                "severity": finding.get("severity", "LOW"),
                "firstSeenCommit": finding.get("first_seen_commit", "")[:8],
                "occurrences": len(locations),
                "remediation": finding.get("remediation", ""),
            },
        }
        results.append(result)

    return results


def _map_level(severity: str) -> str:
    mapping = {"critical": "error", "high": "error", "medium": "warning", "low": "note"}
    return mapping.get(str(severity).lower(), "note")
