import os
import re
from typing import Any, Dict, List, Optional, Set, Tuple

import yaml
from pydantic import ValidationError

from modules.common.errors import InvalidInvocation
from modules.common.orchestrator import validate_stage_order
from schemas import StageDescriptor

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
RECIPES_DIR = os.path.join(PROJECT_ROOT, "configs", "recipes")
DEFAULT_REGISTRY = os.path.join(PROJECT_ROOT, "modules")


def default_recipe_path(single_form: bool) -> str:
    name = "recipe-single-form.yaml" if single_form else "recipe-search-detail.yaml"
    return os.path.join(RECIPES_DIR, name)


def _normalize_param_schema(schema: Any) -> Tuple[Dict[str, Dict[str, Any]], Set[str]]:
    """
    Accept either JSON-Schema-lite {"properties": {...}, "required": [...]} or a direct mapping of param -> spec.
    Returns (properties_map, required_set).
    """
    if not schema:
        return {}, set()
    if isinstance(schema, dict) and "properties" in schema:
        props = schema.get("properties") or {}
        required = set(schema.get("required") or [])
    elif isinstance(schema, dict):
        props = schema
        required = {k for k, v in props.items() if isinstance(v, dict) and v.get("required")}
    else:
        raise InvalidInvocation(f"param_schema must be a mapping, got {type(schema)}")
    return props, required


def _type_matches(val: Any, expected: str) -> bool:
    if expected == "string":
        return isinstance(val, str)
    if expected == "boolean":
        return isinstance(val, bool)
    if expected == "integer":
        return isinstance(val, int) and not isinstance(val, bool)
    return True


def validate_params(params: Dict[str, Any], schema: Any, stage_id: str, module_id: str) -> None:
    props, required = _normalize_param_schema(schema)
    for key in params:
        if key not in props:
            raise InvalidInvocation(f"Unknown param '{key}' for stage '{stage_id}' (module {module_id})")

    missing = [k for k in sorted(required) if params.get(k) is None]
    if missing:
        raise InvalidInvocation(f"Missing required params {missing} for stage '{stage_id}' (module {module_id})")

    for key, spec in props.items():
        val = params.get(key)
        if val is None or not isinstance(spec, dict):
            continue
        expected_type = spec.get("type")
        if expected_type and not _type_matches(val, expected_type):
            raise InvalidInvocation(f"Param '{key}' on stage '{stage_id}' (module {module_id}) expected type "
                                    f"{expected_type}, got {type(val).__name__}")
        if "enum" in spec and val not in spec["enum"]:
            raise InvalidInvocation(f"Param '{key}' on stage '{stage_id}' (module {module_id}) must be one of "
                                    f"{spec['enum']}, got {val}")
        if expected_type == "string" and "pattern" in spec and not re.fullmatch(spec["pattern"], str(val)):
            raise InvalidInvocation(f"Param '{key}' on stage '{stage_id}' (module {module_id}) failed pattern "
                                    f"{spec['pattern']}")


def merge_params(defaults: Dict[str, Any], overrides: Dict[str, Any], schema: Any) -> Dict[str, Any]:
    params = dict(defaults or {})
    props, _ = _normalize_param_schema(schema)
    for key, spec in props.items():
        if isinstance(spec, dict) and "default" in spec and key not in params:
            params[key] = spec["default"]
    if overrides:
        params.update(overrides)
    return {k: v for k, v in params.items() if v is not None}


def load_registry(path: str = DEFAULT_REGISTRY) -> Dict[str, Any]:
    """
    Scan a directory tree for module.yaml files, or load a single registry yaml.
    Each entry remembers the directory it came from so prompt files resolve relative to it.
    """
    if os.path.isdir(path):
        modules = {}
        for root, dirs, files in os.walk(path):
            dirs.sort()
            if "module.yaml" in files:
                with open(os.path.join(root, "module.yaml"), "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
                mid = data.get("module_id")
                if not mid:
                    raise InvalidInvocation(f"{root}/module.yaml has no module_id")
                if mid in modules:
                    raise InvalidInvocation(f"Duplicate module_id '{mid}' in registry ({root})")
                data["_dir"] = root
                modules[mid] = data
        return {"modules": modules}
    if not os.path.exists(path):
        raise InvalidInvocation(f"Module registry not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    for entry in (data.get("modules") or {}).values():
        entry.setdefault("_dir", os.path.dirname(os.path.abspath(path)))
    return data


def load_recipe(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        raise InvalidInvocation(f"Recipe not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        recipe = yaml.safe_load(f) or {}
    if not isinstance(recipe.get("stages"), list) or not recipe["stages"]:
        raise InvalidInvocation(f"Recipe {path} declares no stages")
    return recipe


def _read_system_prompt(entry: Dict[str, Any]) -> str:
    prompt = entry.get("system_prompt")
    if not prompt:
        return ""
    path = os.path.join(entry.get("_dir") or PROJECT_ROOT, prompt)
    if not os.path.isfile(path):
        raise InvalidInvocation(f"System prompt for module {entry.get('module_id')} not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def apply_form_name(recipe: Dict[str, Any], registry: Dict[str, Any], form_name: Optional[str]) -> Dict[str, Any]:
    """Route --form-name into every stage whose module declares a form_name param."""
    if not form_name:
        return recipe
    stage_params = recipe.setdefault("stage_params", {})
    for conf in recipe.get("stages", []):
        entry = registry.get(conf.get("module"), {})
        props, _ = _normalize_param_schema(entry.get("param_schema"))
        if "form_name" in props:
            stage_id = conf.get("id") or conf.get("module")
            stage_params.setdefault(stage_id, {})["form_name"] = form_name
    return recipe


def build_plan(recipe: Dict[str, Any], registry: Dict[str, Any]) -> List[StageDescriptor]:
    """
    Turn a recipe (ordered stage list) plus the module registry into stage descriptors.
    Stage ordinals are recipe positions, starting at 1. Stages have no inputs unless
    they list them under `needs`, and may only need stages listed before them.
    """
    stages: List[StageDescriptor] = []
    stage_overrides_all = recipe.get("stage_params") or {}
    for idx, conf in enumerate(recipe.get("stages", []), start=1):
        module_id = conf.get("module")
        stage_id = conf.get("id") or module_id
        if module_id not in registry:
            raise InvalidInvocation(f"Module {module_id} not found in registry (stage '{stage_id}')")
        entry = registry[module_id]
        merged = dict(conf.get("params") or {})
        merged.update(stage_overrides_all.get(stage_id, {}))
        params = merge_params(entry.get("default_params", {}), merged, entry.get("param_schema"))
        validate_params(params, entry.get("param_schema"), stage_id, module_id)
        try:
            stages.append(StageDescriptor(
                name=stage_id,
                ordinal=idx,
                module_id=module_id,
                stage_type=entry.get("stage", "analyze"),
                needs=list(conf.get("needs") or []),
                artifact=conf.get("out") or entry.get("artifact") or f"{stage_id}.json",
                params=params,
                description=conf.get("description") or entry.get("description"),
                interactive=bool(conf.get("interactive", entry.get("interactive", False))),
                reads_task_files=bool(entry.get("reads_task_files", False)),
                system_prompt=_read_system_prompt(entry),
                prompt_entrypoint=entry.get("entrypoint"),
                settings=entry.get("settings"),
                mcp_config=entry.get("mcp_config"),
            ))
        except ValidationError as e:
            raise InvalidInvocation(f"Invalid stage '{stage_id}' in recipe: {e}") from None
    return validate_stage_order(stages)
