from __future__ import annotations

from dataclasses import dataclass, field
import json
from pathlib import Path
import time

from appmorph.agents.base import Agent, AgentStream
from appmorph.domain.models import AgentResult, AgentRunContext, ProgressType


@dataclass(frozen=True)
class ScriptedStep:
    """Canned behaviour for prompts containing ``prompt_match``."""

    prompt_match: str
    progress: tuple[tuple[ProgressType, str], ...] = ()
    file_changes: dict[str, str] = field(default_factory=dict)
    success: bool = True
    summary: str = ''
    files_changed: tuple[str, ...] = ()
    commit_sha: str | None = None
    error: str | None = None


def step_from_dict(raw: dict) -> ScriptedStep:
    progress = tuple(
        (ProgressType(str(item.get('type') or 'log')), str(item.get('content') or ''))
        for item in raw.get('progress') or []
    )
    return ScriptedStep(
        prompt_match=str(raw['prompt_match']),
        progress=progress,
        file_changes={str(k): str(v) for k, v in (raw.get('file_changes') or {}).items()},
        success=bool(raw.get('success', True)),
        summary=str(raw.get('summary') or ''),
        files_changed=tuple(str(v) for v in raw.get('files_changed') or []),
        commit_sha=raw.get('commit_sha'),
        error=raw.get('error'),
    )


class ScriptedAgent(Agent):
    """Replays predefined steps instead of calling a model; used for tests and dry runs."""

    name = 'scripted'

    def __init__(self, steps: list[ScriptedStep], *, step_delay_seconds: float = 0.0):
        self.steps = list(steps)
        self.step_delay_seconds = max(0.0, float(step_delay_seconds))

    @classmethod
    def from_file(cls, path: Path) -> 'ScriptedAgent':
        raw = json.loads(Path(path).read_text(encoding='utf-8'))
        items = raw.get('steps', []) if isinstance(raw, dict) else raw
        return cls([step_from_dict(item) for item in items])

    def match(self, prompt: str) -> ScriptedStep | None:
        for step in self.steps:
            if step.prompt_match in prompt:
                return step
        return None

    def run(self, context: AgentRunContext, stream: AgentStream) -> AgentResult:
        step = self.match(context.prompt)
        if step is None:
            stream.emit(ProgressType.LOG, f'No scripted step found for prompt: {context.prompt}')
            return AgentResult(success=False, summary='No scripted step configured for this prompt')

        stream.emit(ProgressType.LOG, f'Scripted agent executing step: {step.prompt_match}')
        stream.emit(ProgressType.THINKING, f'Analyzing: {context.prompt[:50]}')
        for progress_type, content in step.progress:
            if stream.aborted:
                return AgentResult(success=False, summary='Task aborted')
            stream.emit(progress_type, content)
            if self.step_delay_seconds:
                time.sleep(self.step_delay_seconds)

        if step.error:
            raise RuntimeError(step.error)

        repo = Path(context.repo_path)
        written: list[str] = []
        for rel, content in step.file_changes.items():
            if stream.aborted:
                return AgentResult(success=False, summary='Task aborted', files_changed=written)
            target = repo / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding='utf-8')
            written.append(rel)
            stream.emit(ProgressType.LOG, f'Wrote: {rel}')

        stream.emit(ProgressType.LOG, 'Scripted agent completed')
        return AgentResult(
            success=step.success,
            summary=step.summary,
            files_changed=list(step.files_changed) or written,
            commit_sha=step.commit_sha,
        )
