from __future__ import annotations

from pathlib import Path

from appmorph.domain.models import DeployInfo
from appmorph.observability import get_logger
from appmorph.staging import remove_tree, resolve_session_dir

_log = get_logger('appmorph.deploy')

SELECT_PATH_PREFIX = '/__appmorph/select/'
RESET_PATH = '/__appmorph/reset'


class DeployService:
    def __init__(self, *, deploy_root: Path, public_url: str, default_variant: str = 'default'):
        self.deploy_root = Path(deploy_root).resolve()
        self.public_url = str(public_url or '').rstrip('/')
        self.default_variant = default_variant

    def get_deploy_path(self, session_id: str) -> Path:
        return resolve_session_dir(self.deploy_root, session_id)

    def get_default_path(self) -> Path:
        return self.deploy_root / self.default_variant

    def get_deploy_url(self, session_id: str) -> str:
        return f'{self.public_url}{SELECT_PATH_PREFIX}{session_id}'

    def get_deploy_info(self, session_id: str) -> DeployInfo:
        return DeployInfo(
            session_id=session_id,
            deploy_path=str(self.get_deploy_path(session_id)),
            deploy_url=self.get_deploy_url(session_id),
        )

    def deploy_exists(self, session_id: str) -> bool:
        try:
            return self.get_deploy_path(session_id).is_dir()
        except ValueError:
            return False

    def cleanup_deploy(self, session_id: str) -> bool:
        removed = remove_tree(self.get_deploy_path(session_id))
        if removed:
            _log.info('deploy removed session=%s', session_id)
        return removed
