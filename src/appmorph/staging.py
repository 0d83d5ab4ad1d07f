from __future__ import annotations

import json
import os
from pathlib import Path
import shutil
import stat

from appmorph.domain.models import StageInfo
from appmorph.errors import StagingError
from appmorph.observability import get_logger

_log = get_logger('appmorph.staging')

EXCLUDED_DIR_NAMES = frozenset({'node_modules', '.git', 'dist', '.next', '.turbo'})
WORKSPACE_MARKER = 'pnpm-workspace.yaml'
WORKSPACE_PACKAGE_DIRS = ('packages', 'plugins')
WORKSPACE_SCOPE = '@appmorph/'
_DEPENDENCY_SECTIONS = ('dependencies', 'devDependencies')


def resolve_session_dir(root: Path, session_id: str) -> Path:
    """Return ``root/session_id``, refusing ids that escape *root*."""
    session_text = str(session_id or '').strip()
    if not session_text or session_text in {'.', '..'}:
        raise ValueError('session_id is required')
    base = Path(root).resolve()
    target = (base / session_text).resolve(strict=False)
    if target.parent != base:
        raise ValueError(f'invalid session_id: {session_id!r}')
    return target


def remove_tree(path: Path) -> bool:
    target = Path(path)
    if not target.exists():
        return False

    def _onerror(func, p, exc_info):
        os.chmod(p, stat.S_IWRITE)
        func(p)

    shutil.rmtree(target, onerror=_onerror)
    return True


def find_workspace_root(start: Path) -> Path | None:
    current = Path(start).resolve()
    for candidate in (current, *current.parents):
        if (candidate / WORKSPACE_MARKER).is_file():
            return candidate
    return None


class StagingService:
    def __init__(self, *, source_location: Path, stage_root: Path, workspace_root: Path | None = None):
        self.source_location = Path(source_location).resolve()
        self.stage_root = Path(stage_root).resolve()
        self.workspace_root = workspace_root if workspace_root is not None else find_workspace_root(self.source_location)

    def get_stage_path(self, session_id: str) -> Path:
        return resolve_session_dir(self.stage_root, session_id)

    def stage_exists(self, session_id: str) -> bool:
        return self.get_stage_path(session_id).is_dir()

    def create_stage(self, session_id: str) -> StageInfo:
        return self.create_chained_stage(session_id, None)

    def create_chained_stage(self, session_id: str, parent_session_id: str | None) -> StageInfo:
        stage_path = self.get_stage_path(session_id)
        if stage_path.exists():
            _log.info('removing existing stage path=%s', stage_path)
            remove_tree(stage_path)

        source = self.source_location
        from_parent = False
        if parent_session_id:
            parent_path = self.get_stage_path(parent_session_id)
            if parent_path.is_dir():
                source = parent_path
                from_parent = True
            else:
                _log.warning(
                    'parent stage missing, falling back to original source parent=%s session=%s',
                    parent_session_id,
                    session_id,
                )

        try:
            stage_path.mkdir(parents=True, exist_ok=True)
            _copy_filtered(source, stage_path)
            if not from_parent:
                self._resolve_workspace_dependencies(stage_path)
        except OSError as exc:
            raise StagingError(f'failed to stage {source} into {stage_path}: {exc}') from exc

        _log.info('stage created session=%s source=%s path=%s', session_id, source, stage_path)
        return StageInfo(session_id=session_id, stage_path=str(stage_path))

    def cleanup_stage(self, session_id: str) -> bool:
        stage_path = self.get_stage_path(session_id)
        removed = remove_tree(stage_path)
        if removed:
            _log.info('stage removed session=%s', session_id)
        return removed

    def _resolve_workspace_dependencies(self, stage_path: Path) -> None:
        manifest = stage_path / 'package.json'
        if not manifest.is_file():
            return
        try:
            package = json.loads(manifest.read_text(encoding='utf-8'))
        except ValueError:
            _log.warning('cannot parse package.json path=%s', manifest)
            return
        if not isinstance(package, dict):
            return

        modified = False
        for section in _DEPENDENCY_SECTIONS:
            deps = package.get(section)
            if not isinstance(deps, dict):
                continue
            for name, version in list(deps.items()):
                if not (isinstance(version, str) and version.startswith('workspace:')):
                    continue
                resolved = self._resolve_workspace_package(name)
                if resolved is None:
                    continue
                deps[name] = f'file:{resolved}'
                modified = True
                _log.info('resolved workspace dependency name=%s path=%s', name, resolved)

        if modified:
            if manifest.is_symlink():
                manifest.unlink()
            manifest.write_text(json.dumps(package, indent=2) + '\n', encoding='utf-8')

    def _resolve_workspace_package(self, name: str) -> Path | None:
        if self.workspace_root is None:
            _log.warning('cannot resolve %s: no %s found above the source', name, WORKSPACE_MARKER)
            return None
        short_name = name.replace(WORKSPACE_SCOPE, '')
        for folder in WORKSPACE_PACKAGE_DIRS:
            candidate = Path(self.workspace_root) / folder / short_name
            manifest = candidate / 'package.json'
            if not manifest.is_file():
                continue
            try:
                package_name = json.loads(manifest.read_text(encoding='utf-8')).get('name')
            except (OSError, ValueError, AttributeError):
                continue
            if package_name == name:
                return candidate
        _log.warning('could not resolve workspace package name=%s', name)
        return None


def _copy_filtered(source: Path, destination: Path) -> None:
    for root, dirs, files in os.walk(source):
        root_path = Path(root)
        rel_root = root_path.relative_to(source)
        dirs[:] = [name for name in dirs if name not in EXCLUDED_DIR_NAMES]
        target_root = destination / rel_root
        target_root.mkdir(parents=True, exist_ok=True)
        # os.walk lists directory symlinks in dirs without descending into them.
        for name in dirs:
            if (root_path / name).is_symlink():
                _copy_link(root_path / name, target_root / name)
            else:
                (target_root / name).mkdir(exist_ok=True)
        for filename in files:
            if (root_path / filename).is_symlink():
                _copy_link(root_path / filename, target_root / filename)
            else:
                shutil.copy2(root_path / filename, target_root / filename)


def _copy_link(link: Path, destination: Path) -> None:
    if destination.is_symlink() or destination.exists():
        destination.unlink()
    os.symlink(os.readlink(link), destination)
