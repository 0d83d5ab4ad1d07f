from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import subprocess
import time

from appmorph.config import DIST_PLACEHOLDER
from appmorph.deploy import DeployService
from appmorph.errors import BuildError
from appmorph.observability import get_logger

_log = get_logger('appmorph.build')


@dataclass(frozen=True)
class BuildResult:
    success: bool
    output: str = ''
    error: str | None = None
    duration_seconds: float = 0.0


class BuildService:
    """Runs the operator's build command for one staged session.

    Commands come from project configuration and run through the shell so
    that pipes and ``&&`` chains behave as written.
    """

    def __init__(
        self,
        *,
        build_command: str,
        deploy: DeployService,
        install_command: str | None = 'npm install',
        timeout_seconds: float = 600,
    ):
        self.build_command = build_command
        self.deploy = deploy
        self.install_command = (install_command or '').strip() or None
        self.timeout_seconds = max(0.05, float(timeout_seconds))

    def resolve_build_command(self, session_id: str) -> str:
        deploy_path = self.deploy.get_deploy_path(session_id)
        return self.build_command.replace(DIST_PLACEHOLDER, str(deploy_path))

    def execute_build(self, session_id: str, stage_path: str | Path) -> BuildResult:
        started = time.monotonic()
        cwd = Path(stage_path)
        deploy_path = self.deploy.get_deploy_path(session_id)
        try:
            deploy_path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BuildError(f'cannot create deploy directory {deploy_path}: {exc}') from exc
        command = self.resolve_build_command(session_id)
        env = dict(os.environ)
        env['NODE_ENV'] = 'production'

        outputs: list[str] = []
        if self.install_command and (cwd / 'package.json').is_file():
            _log.info('installing dependencies session=%s command=%s', session_id, self.install_command)
            # Install keeps the caller's NODE_ENV.
            install = self._run(self.install_command, cwd=cwd, env=dict(os.environ))
            outputs.append(install.output)
            if not install.success:
                return BuildResult(
                    success=False,
                    output=_join(outputs),
                    error=f'dependency install failed: {install.error}',
                    duration_seconds=time.monotonic() - started,
                )

        _log.info('running build session=%s cwd=%s command=%s', session_id, cwd, command)
        build = self._run(command, cwd=cwd, env=env)
        outputs.append(build.output)
        elapsed = time.monotonic() - started
        if build.success:
            _log.info('build finished session=%s seconds=%.2f', session_id, elapsed)
        else:
            _log.warning('build failed session=%s error=%s', session_id, build.error)
        return BuildResult(
            success=build.success,
            output=_join(outputs),
            error=build.error,
            duration_seconds=elapsed,
        )

    def _run(self, command: str, *, cwd: Path, env: dict[str, str]) -> BuildResult:
        try:
            completed = subprocess.run(
                command,
                shell=True,
                cwd=str(cwd),
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding='utf-8',
                errors='replace',
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            partial = exc.output if isinstance(exc.output, str) else ''
            return BuildResult(
                success=False,
                output=partial.strip(),
                error=f'command_timeout timeout_seconds={self.timeout_seconds:g} command={command}',
            )
        except OSError as exc:
            return BuildResult(success=False, error=f'command_failed command={command} error={exc}')

        output = (completed.stdout or '').strip()
        if completed.returncode != 0:
            return BuildResult(
                success=False,
                output=output,
                error=f'command_failed returncode={completed.returncode} command={command}',
            )
        return BuildResult(success=True, output=output)


def _join(parts: list[str]) -> str:
    return '\n'.join(part for part in parts if part).strip()
