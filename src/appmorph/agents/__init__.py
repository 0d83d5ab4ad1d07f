from __future__ import annotations

from appmorph.agents.base import Agent, AgentStream, start_agent
from appmorph.agents.claude_cli import ClaudeCliAgent
from appmorph.agents.factory import AgentFactory, agent_factory_for
from appmorph.agents.scripted import ScriptedAgent, ScriptedStep

__all__ = [
    'Agent',
    'AgentFactory',
    'AgentStream',
    'ClaudeCliAgent',
    'ScriptedAgent',
    'ScriptedStep',
    'agent_factory_for',
    'start_agent',
]
