import re
import json
import logging
from typing import Any, Dict, List, Optional

from basellm_provider import BaseLLMProvider
from data_classes import Finding, TriageResult
from ollama_provider import OllamaProvider
from scan_errors import TriageUnavailable

logger = logging.getLogger(__name__)

TRIAGE_BATCH_SIZE = 25
MAX_LOCATIONS_IN_PROMPT = 3


class LLMAnalyzer:
    """llm triage of finished scans: suppresses false positives and drafts remediation"""

    def __init__(self, provider: Optional[BaseLLMProvider] = None):
        self.provider = provider or OllamaProvider()

    def triage(self, findings: List[Finding]) -> TriageResult:
        """
        Runs every finding through the LLM in batches.

        Only redacted previews and locations are sent. Any failure raises
        TriageUnavailable, the caller falls back to the untriaged findings.
        """

        suppressed: List[str] = []
        remediation: Dict[str, str] = {}

        for start in range(0, len(findings), TRIAGE_BATCH_SIZE):
            batch = findings[start : start + TRIAGE_BATCH_SIZE]
            ids = {f"F{i}": finding for i, finding in enumerate(batch, start=1)}

            try:
                response_text = self._call_llm(ids)
            except TriageUnavailable:
                raise
            except Exception as e:
                raise TriageUnavailable(f"LLM triage failed: {e}") from e

            for verdict in self._parse_llm_response(response_text):
                finding = ids.get(str(verdict.get("id", "")))
                if finding is None:
                    continue
                if verdict.get("false_positive") is True:
                    suppressed.append(finding.fingerprint)
                text = verdict.get("remediation")
                if isinstance(text, str) and text.strip():
                    remediation[finding.fingerprint] = text.strip()

        kept = [f for f in findings if f.fingerprint not in suppressed]
        logger.info(f"Triage kept {len(kept)} of {len(findings)} findings")
        return TriageResult(findings=kept, suppressed=suppressed, remediation=remediation)

    def _describe(self, finding_id: str, finding: Finding) -> str:
        locations = ", ".join(
            f"{loc.file_path}:{loc.line_number}"
            for loc in finding.locations[:MAX_LOCATIONS_IN_PROMPT]
        )
        if len(finding.locations) > MAX_LOCATIONS_IN_PROMPT:
            locations += f" (+{len(finding.locations) - MAX_LOCATIONS_IN_PROMPT} more)"
        return (
            f"- {finding_id}: {finding.description} [{finding.category.value}, "
            f"{finding.severity.name}] preview={finding.preview} at {locations}"
        )

    def _call_llm(self, ids: Dict[str, Finding]) -> str:
        """Calls the LLM with the triage prompt"""
        finding_lines = "\n".join(self._describe(i, f) for i, f in ids.items())

        prompt = (
            """You are a security expert triaging secrets found in git history. Respond with ONLY valid JSON.
        IMPORTANT: Your response must be ONLY a JSON array. No explanations, no markdown, just JSON.

        Values are redacted previews. Mark a finding as a false positive only when the
        file location or description makes it clearly a placeholder, test fixture or example.

        Findings:
        """
            + finding_lines
            + """

        Response format (EXACTLY like this):
        [
        {"id": "F1", "false_positive": false, "remediation": "Rotate the AWS key and purge it from history"},
        {"id": "F2", "false_positive": true, "remediation": ""}
        ]
        Rules:
        1. ONLY return valid JSON array
        2. Use double quotes for all strings
        3. Include every finding id exactly once
        4. Do not include markdown code blocks
        5. Do not add explanations

        Response:
        """
        )

        response_text = self.provider.analyze(prompt)
        logger.debug(f"Raw LLM message: {response_text[:500]}")
        return response_text

    def _parse_llm_response(self, response_text: str) -> List[Dict[str, Any]]:
        """Parse the LLM response and extracts valid JSON"""
        response_text = response_text.strip()

        # remove markdown
        response_text = re.sub(r"```json\s*", "", response_text)
        response_text = re.sub(r"```\s*", "", response_text)

        if response_text == "[]":
            return []

        json_patterns = [
            r"(\[\s*\{.*\}\s*\])",  # complete JSON array
            r"(\[\s*\{.*)",  # incomplete JSON e.g. no closing ]
        ]

        for pattern in json_patterns:
            json_match = re.search(pattern, response_text, re.DOTALL)
            if json_match:
                json_str = json_match.group(1)
                if not json_str.rstrip().endswith("]"):
                    logger.warning("Detected incomplete JSON, attempting to fix...")
                    # last complete object is found, then closed
                    last_brace = json_str.rfind("}")
                    if last_brace != -1:
                        json_str = json_str[: last_brace + 1] + "\n]"

                try:
                    verdicts = json.loads(json_str)
                    if isinstance(verdicts, list):
                        return [v for v in verdicts if isinstance(v, dict)]
                except json.JSONDecodeError:
                    continue

        raise TriageUnavailable("No valid JSON found in triage response")

    def cleanup(self):
        """cleans up the resources"""
        self.provider.cleanup()
