"""Agent capabilities: the opaque workers each phase delegates to."""

from autobuild.agents.base import AgentCapability, AgentResult, PhaseCapability
from autobuild.agents.claude_cli import ClaudeCliAgent

__all__ = ["AgentCapability", "AgentResult", "ClaudeCliAgent", "PhaseCapability"]
