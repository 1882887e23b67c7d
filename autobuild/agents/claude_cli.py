"""
Claude Code CLI backend for agent capabilities.

This module provides:
- Command construction for `claude --output-format json`
- Parsing of the JSON envelope and of the structured reply inside it
- Timeout handling
- Token cost extraction for resource tracking
"""

from __future__ import annotations

import json
import re
import subprocess
from typing import TYPE_CHECKING, Any, Optional

from autobuild.agents.base import AgentCapability, AgentResult, PhaseCapability
from autobuild.errors import ExternalCapabilityFailure

if TYPE_CHECKING:
    from autobuild.config import BuildConfig
    from autobuild.logger import BuildLogger


_INSTRUCTIONS: dict[PhaseCapability, str] = {
    PhaseCapability.INFRA: (
        "Set up the repository scaffold and tooling for the project. "
        'Reply with {"artifacts": [paths created]}.'
    ),
    PhaseCapability.DEFINITION: (
        "Write a PRD for the request and break it into work items. "
        'Reply with {"artifacts": [prd path], "items": [{"title", "body", "kind": '
        '"FEATURE"|"BUG", "priority": "CRITICAL"|"HIGH"|"MEDIUM"|"LOW", '
        '"files_estimate", "loc_estimate", "dependency_count"}]}.'
    ),
    PhaseCapability.DECOMPOSITION: (
        "Split the parent work item into smaller children that together cover it. "
        'Reply with {"children": [{"title", "body", "files_estimate", "loc_estimate", '
        '"dependency_count", "blocked_by": [indices of sibling children]}]}.'
    ),
    PhaseCapability.ARCHITECTURE: (
        "Write the architecture document for the defined work items. "
        'Reply with {"artifacts": [paths]}.'
    ),
    PhaseCapability.IMPLEMENTATION: (
        "Implement the given work item (or the given sub-unit of it) test first. "
        'Reply with {"artifacts": [paths], "done": bool, "commits": int}.'
    ),
    PhaseCapability.QA: (
        "Run a QA pass over the implementation and report defects. "
        'Reply with {"artifacts": [report path], "bugs": [{"title", "body", "priority", '
        '"files_estimate", "loc_estimate"}]}.'
    ),
    PhaseCapability.VERIFICATION: (
        "Run the full test suite with coverage. "
        'Reply with {"passed": bool, "failed_tests": [test ids], "coverage": percent, '
        '"message": str, "failing_items": [work item ids]}.'
    ),
    PhaseCapability.LEARNING: (
        "Summarise lessons learned from this build. Reply with {}."
    ),
}

_JSON_BLOCK = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


class ClaudeCliAgent(AgentCapability):
    """
    Runs each capability as one Claude Code CLI invocation.

    The reply must contain a JSON object (bare or in a ```json fence)
    matching the capability's output contract.
    """

    def __init__(self, config: BuildConfig, logger: Optional[BuildLogger] = None) -> None:
        self.config = config
        self._logger = logger

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            log_data = {"component": "claude_cli"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def build_prompt(self, capability: PhaseCapability, payload: dict[str, Any]) -> str:
        return (
            f"{_INSTRUCTIONS[capability]}\n\n"
            f"Input:\n```json\n{json.dumps(payload, indent=2, default=str)}\n```\n"
            "Respond with the JSON object only."
        )

    def _build_command(self, prompt: str) -> list[str]:
        return [
            self.config.agent.binary,
            "--print",
            "--output-format", "json",
            "--max-turns", str(self.config.agent.max_turns),
            "--",
            prompt,
        ]

    @staticmethod
    def extract_reply(text: str) -> dict[str, Any]:
        """
        Pull the structured reply out of the model's text.

        Raises:
            ValueError: If no JSON object can be found.
        """
        match = _JSON_BLOCK.search(text)
        candidate = match.group(1) if match else text.strip()
        if not match:
            start, end = candidate.find("{"), candidate.rfind("}")
            if start == -1 or end < start:
                raise ValueError("reply contains no JSON object")
            candidate = candidate[start:end + 1]
        data = json.loads(candidate)
        if not isinstance(data, dict):
            raise ValueError("reply JSON is not an object")
        return data

    @staticmethod
    def _token_cost(envelope: dict[str, Any]) -> int:
        usage = envelope.get("usage") or {}
        return int(
            usage.get("input_tokens", 0)
            + usage.get("output_tokens", 0)
            + usage.get("cache_read_input_tokens", 0)
            + usage.get("cache_creation_input_tokens", 0)
        )

    def invoke(self, capability: PhaseCapability, payload: dict[str, Any]) -> AgentResult:
        """
        Run one capability.

        Raises:
            ExternalCapabilityFailure: If the CLI is missing, times out,
                exits non-zero, or replies with something unparsable.
        """
        cmd = self._build_command(self.build_prompt(capability, payload))
        timeout = self.config.agent.timeout_seconds
        self._log("agent_invocation_start", {"capability": capability.value, "timeout": timeout})

        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                cwd=self.config.repo_root,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            raise ExternalCapabilityFailure(
                f"Agent binary not found: {self.config.agent.binary}", source="agent", cause=e
            )
        except subprocess.TimeoutExpired as e:
            self._log("agent_invocation_timeout", {"capability": capability.value}, level="error")
            raise ExternalCapabilityFailure(
                f"{capability.value} timed out after {timeout} seconds", source="agent", cause=e
            )

        if proc.returncode != 0:
            stderr = (proc.stderr or "")[:500]
            self._log("agent_invocation_error", {
                "capability": capability.value,
                "returncode": proc.returncode,
                "stderr": stderr,
            }, level="error")
            raise ExternalCapabilityFailure(
                f"{capability.value} exited with code {proc.returncode}", source="agent"
            )

        try:
            envelope = json.loads(proc.stdout)
            if str(envelope.get("subtype", "")).startswith("error_"):
                raise ExternalCapabilityFailure(
                    f"{capability.value} stopped early: {envelope['subtype']}", source="agent"
                )
            output = self.extract_reply(envelope.get("result", ""))
        except (json.JSONDecodeError, ValueError) as e:
            raise ExternalCapabilityFailure(
                f"{capability.value} returned an unparsable reply: {e}", source="agent", cause=e
            )

        cost = self._token_cost(envelope)
        self._log("agent_invocation_complete", {"capability": capability.value, "cost": cost})
        return AgentResult.success_result(output, cost=cost)
