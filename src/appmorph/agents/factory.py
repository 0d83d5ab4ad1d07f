from __future__ import annotations

from typing import Callable

from appmorph.agents.base import Agent
from appmorph.agents.claude_cli import ClaudeCliAgent
from appmorph.agents.scripted import ScriptedAgent
from appmorph.config import Settings
from appmorph.errors import ConfigError

AgentFactory = Callable[[], Agent]


def agent_factory_for(settings: Settings) -> AgentFactory:
    """Return a factory producing a fresh agent per task."""
    if settings.agent_type == 'claude-cli':
        return lambda: ClaudeCliAgent(
            command=settings.claude_command,
            timeout_seconds=settings.agent_timeout_seconds,
        )
    if settings.agent_type == 'scripted':
        if settings.scripted_steps_file is None:
            return lambda: ScriptedAgent([])
        agent = ScriptedAgent.from_file(settings.scripted_steps_file)
        return lambda: agent
    raise ConfigError(f'unsupported agent type: {settings.agent_type}', field='APPMORPH_AGENT_TYPE')


__all__ = ['AgentFactory', 'agent_factory_for']
