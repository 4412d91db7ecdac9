from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as package_version

from codex_exec.config import CodexConfig, load_config
from codex_exec.errors import CodexExecError, CodexLaunchError, ConfigError
from codex_exec.models import ExecutionRequest, ExecutionResult
from codex_exec.runner import run_codex


def _resolve_version() -> str:
    for distribution_name in ("codex-mcp", "codex_mcp"):
        try:
            return package_version(distribution_name)
        except PackageNotFoundError:
            continue
    return "0+unknown"


__version__ = _resolve_version()

__all__ = [
    "__version__",
    "CodexConfig",
    "CodexExecError",
    "CodexLaunchError",
    "ConfigError",
    "ExecutionRequest",
    "ExecutionResult",
    "load_config",
    "run_codex",
]
