import os
from typing import Any, Dict, Optional

from pydantic import ValidationError

from modules.common.errors import InvalidInvocation
from modules.common.recipe import PROJECT_ROOT
from modules.common.utils import load_settings
from schemas import AgentSettings, RunConfig, SourceLayout

DEFAULT_SETTINGS = os.path.join(PROJECT_ROOT, "settings.yaml")


def deep_merge(dst: Dict[str, Any], src: Dict[str, Any]) -> Dict[str, Any]:
    for k, v in src.items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            deep_merge(dst[k], v)
        else:
            dst[k] = v
    return dst


def read_settings(path: Optional[str]) -> Dict[str, Any]:
    """
    An explicit --settings path must exist; the implicit settings.yaml is optional.
    """
    if path:
        if not os.path.exists(path):
            raise InvalidInvocation(f"Settings file not found: {path}")
        return load_settings(path)
    if os.path.exists(DEFAULT_SETTINGS):
        return load_settings(DEFAULT_SETTINGS)
    return {}


def build_run_config(settings: Dict[str, Any], output_override: Optional[str] = None,
                     project_root: str = PROJECT_ROOT) -> RunConfig:
    output_root = output_override or settings.get("output_root") or "output"
    tasks_dir = settings.get("tasks_dir") or os.path.join(".claude", "tasks")
    if not os.path.isabs(tasks_dir):
        tasks_dir = os.path.join(project_root, tasks_dir)
    try:
        return RunConfig(
            project_root=project_root,
            output_root=os.path.abspath(output_root),
            tasks_dir=tasks_dir,
            source=SourceLayout(**(settings.get("source") or {})),
            agent=AgentSettings(**(settings.get("agent") or {})),
        )
    except ValidationError as e:
        raise InvalidInvocation(f"Invalid settings: {e}") from None
