import json
import os
from typing import Any, Dict, List, Optional

# Conversion-run options that describe the stage, not the agent; never forwarded.
PIPELINE_ONLY_FLAGS = {"entity", "form-name", "form-type", "output", "skip-steps", "interactive"}


def build_agent_flags(base_flags: Dict[str, Any], user_flags: Optional[Dict[str, Any]] = None) -> List[str]:
    """
    Merge base flags with user overrides and render them as CLI arguments.
    True booleans become bare switches, False/None are dropped, lists repeat the flag.
    """
    merged = dict(base_flags)
    merged.update(user_flags or {})
    flags: List[str] = []
    for key, value in merged.items():
        if value is None or key in PIPELINE_ONLY_FLAGS:
            continue
        if isinstance(value, bool):
            if value:
                flags.append(f"--{key}")
        elif isinstance(value, (list, tuple)):
            for item in value:
                flags += [f"--{key}", str(item)]
        else:
            flags += [f"--{key}", str(value)]
    return flags


def load_passthrough_config(path: Optional[str], project_root: str) -> Optional[str]:
    """
    Read a settings/MCP JSON file and return it as a compact JSON string.
    The content is handed to the agent untouched apart from re-serialisation.
    """
    if not path:
        return None
    full = path if os.path.isabs(path) else os.path.join(project_root, path)
    with open(full, "r", encoding="utf-8") as f:
        return json.dumps(json.load(f), separators=(",", ":"))


def stage_agent_flags(system_prompt: str, settings_json: Optional[str], mcp_json: Optional[str],
                      interactive: bool, model: Optional[str] = None,
                      user_flags: Optional[Dict[str, Any]] = None) -> List[str]:
    base: Dict[str, Any] = {
        "append-system-prompt": system_prompt or None,
        "settings": settings_json,
        "mcp-config": mcp_json,
        "model": model,
    }
    if not interactive:
        base.update({"print": True, "output-format": "json"})
    return build_agent_flags(base, user_flags)
