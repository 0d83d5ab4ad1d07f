from __future__ import annotations

import os
from pathlib import Path
from queue import Empty, Queue
import shlex
import shutil
import subprocess
from threading import Thread
import time

from appmorph.agents.base import Agent, AgentStream, constraint_violation, diff_snapshots, snapshot_tree
from appmorph.domain.models import AgentResult, AgentRunContext, ProgressType
from appmorph.observability import get_logger

_log = get_logger('appmorph.agents.claude_cli')

_SUMMARY_MAX_CHARS = 2000


def build_prompt(context: AgentRunContext) -> str:
    lines = [context.prompt.strip()]
    if context.instructions:
        lines.extend(['', context.instructions.strip()])
    constraints = context.constraints
    if constraints.blocked_paths:
        lines.extend(['', 'Do not modify files matching: ' + ', '.join(constraints.blocked_paths)])
    if constraints.blocked_commands:
        lines.append('Do not run these commands: ' + ', '.join(constraints.blocked_commands))
    if constraints.allowed_commands:
        lines.append('Only run these commands: ' + ', '.join(constraints.allowed_commands))
    return '\n'.join(lines).strip() + '\n'


class ClaudeCliAgent(Agent):
    """Runs the ``claude`` CLI inside the staged copy and streams its output.

    The prompt goes to stdin. Changed files are found by hashing the tree
    before and after the run.
    """

    name = 'claude-cli'

    def __init__(self, *, command: str, timeout_seconds: float = 1800):
        self.command = command
        self.timeout_seconds = max(0.05, float(timeout_seconds))

    def build_argv(self) -> list[str]:
        argv = shlex.split(self.command)
        if argv:
            resolved = shutil.which(argv[0])
            if resolved:
                argv[0] = resolved
        return argv

    def run(self, context: AgentRunContext, stream: AgentStream) -> AgentResult:
        repo = Path(context.repo_path)
        argv = self.build_argv()
        if not argv:
            return AgentResult(success=False, summary='agent command is not configured')

        stream.emit(ProgressType.LOG, f'Starting Claude CLI agent for branch: {context.branch}')
        before = snapshot_tree(repo, context.constraints)
        started = time.monotonic()
        try:
            returncode, stdout = self._run_streaming(argv, build_prompt(context), cwd=repo, stream=stream)
        except FileNotFoundError:
            return AgentResult(success=False, summary=f'command_not_found command={argv[0]}')
        except subprocess.TimeoutExpired:
            return AgentResult(success=False, summary=f'command_timeout timeout_seconds={self.timeout_seconds:g}')

        files_changed = diff_snapshots(before, snapshot_tree(repo, context.constraints))
        for rel in files_changed:
            stream.emit(ProgressType.FILE_CHANGE, rel)
        _log.info(
            'claude cli finished returncode=%s files=%s seconds=%.1f',
            returncode,
            len(files_changed),
            time.monotonic() - started,
        )

        if stream.aborted:
            return AgentResult(success=False, summary='Task aborted', files_changed=files_changed)
        if returncode != 0:
            return AgentResult(
                success=False,
                summary=f'command_failed returncode={returncode}',
                files_changed=files_changed,
            )
        violation = constraint_violation(repo, files_changed, context.constraints)
        if violation:
            return AgentResult(success=False, summary=f'constraint violated: {violation}', files_changed=files_changed)
        summary = stdout.strip()[-_SUMMARY_MAX_CHARS:] or 'Agent finished without output'
        return AgentResult(success=True, summary=summary, files_changed=files_changed)

    def _run_streaming(self, argv: list[str], prompt: str, *, cwd: Path, stream: AgentStream) -> tuple[int, str]:
        process = subprocess.Popen(
            argv,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding='utf-8',
            errors='replace',
            cwd=str(cwd),
            bufsize=1,
            env=dict(os.environ),
        )
        if process.stdin is not None:
            try:
                process.stdin.write(prompt)
            finally:
                process.stdin.close()

        lines: Queue[tuple[str, str]] = Queue()
        stdout_chunks: list[str] = []

        def _pump(pipe, stream_name: str) -> None:
            if pipe is None:
                return
            try:
                for chunk in iter(pipe.readline, ''):
                    lines.put((stream_name, chunk))
            finally:
                pipe.close()

        workers = [
            Thread(target=_pump, args=(process.stdout, 'stdout'), daemon=True),
            Thread(target=_pump, args=(process.stderr, 'stderr'), daemon=True),
        ]
        for worker in workers:
            worker.start()

        deadline = time.monotonic() + self.timeout_seconds
        while True:
            if stream.aborted:
                _log.info('abort requested, terminating agent pid=%s', process.pid)
                self._stop(process)
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._stop(process)
                raise subprocess.TimeoutExpired(cmd=argv, timeout=self.timeout_seconds)

            try:
                stream_name, chunk = lines.get(timeout=min(0.1, max(0.01, remaining)))
            except Empty:
                pass
            else:
                text = chunk.rstrip('\n')
                if stream_name == 'stdout':
                    stdout_chunks.append(chunk)
                    stream.emit(ProgressType.STDOUT, text)
                elif text.strip():
                    stream.emit(ProgressType.LOG, text)

            finished = process.poll() is not None
            drained = lines.empty() and all(not worker.is_alive() for worker in workers)
            if finished and drained:
                break

        for worker in workers:
            worker.join(timeout=0.2)
        return int(process.returncode or 0), ''.join(stdout_chunks)

    @staticmethod
    def _stop(process: subprocess.Popen) -> None:
        process.kill()
        try:
            process.wait(timeout=2)
        except subprocess.TimeoutExpired:
            _log.warning('agent process did not exit after kill pid=%s', process.pid)
