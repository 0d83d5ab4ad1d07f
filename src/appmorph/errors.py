from __future__ import annotations


class AppmorphError(Exception):
    code = 'appmorph_error'

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigError(AppmorphError):
    code = 'config_error'

    def __init__(self, message: str, *, field: str | None = None):
        super().__init__(message)
        self.field = field


class StagingError(AppmorphError):
    code = 'staging_error'


class AgentError(AppmorphError):
    code = 'agent_error'


class BuildError(AppmorphError):
    code = 'build_error'

    def __init__(self, message: str, *, output: str = '', returncode: int | None = None):
        super().__init__(message)
        self.output = output
        self.returncode = returncode


class PersistenceCorrupt(AppmorphError):
    code = 'persistence_corrupt'


class RollbackTargetInvalid(AppmorphError):
    code = 'rollback_target_invalid'


class ChainBusyError(AppmorphError):
    code = 'chain_busy'


class PluginVetoed(AppmorphError):
    code = 'plugin_vetoed'

    def __init__(self, reason: str, *, hook: str):
        super().__init__(reason)
        self.reason = reason
        self.hook = hook


class AuthorizationDenied(AppmorphError):
    code = 'authorization_denied'
