import os
import re
from typing import Dict, List, Optional, Tuple

from schemas import SourceLayout

SEARCH_DETAIL_FORM = re.compile(r"^frm(.+?)(Search|Detail)$")
FORM_TYPES = ("Search", "Detail")


def parse_entity_from_form_name(form_name: str) -> Optional[str]:
    """frmFacilitySearch -> Facility. None for forms outside the Search/Detail convention."""
    match = SEARCH_DETAIL_FORM.match(form_name or "")
    if match:
        return match.group(1)
    return None


def resolve_form_name(form_name: str) -> Tuple[str, bool]:
    """
    Returns (entity, is_single_form) for a form name.
    frmFuelPrices has no Search/Detail suffix, so it is treated as a standalone form.
    """
    entity = parse_entity_from_form_name(form_name)
    if entity:
        return entity, False
    if form_name.startswith("frm") and len(form_name) > 3:
        return form_name[3:], True
    raise ValueError(f"Could not parse entity name from form name {form_name!r}; "
                     "expected frm{Entity}Search, frm{Entity}Detail or frm{Entity}")


def _join(layout: SourceLayout, *parts: str) -> str:
    # Prompt paths always use forward slashes; agents search with them as-is.
    base = (layout.input_directory or "").rstrip("/")
    tail = "/".join(p.strip("/") for p in parts if p)
    return f"{base}/{tail}" if base else tail


def forms_directory(layout: SourceLayout) -> str:
    return _join(layout, layout.forms)


def form_path(layout: SourceLayout, entity: str, form_type: str) -> str:
    return _join(layout, layout.forms, f"frm{entity}{form_type}.vb")


def form_designer_path(layout: SourceLayout, entity: str, form_type: str) -> str:
    return _join(layout, layout.forms, f"frm{entity}{form_type}.Designer.vb")


def form_path_by_name(layout: SourceLayout, form_name: str) -> str:
    return _join(layout, layout.forms, f"{form_name}.vb")


def form_designer_path_by_name(layout: SourceLayout, form_name: str) -> str:
    return _join(layout, layout.forms, f"{form_name}.Designer.vb")


def business_object_path(layout: SourceLayout, entity: str) -> str:
    return _join(layout, layout.business_objects, f"{entity}Location.vb")


def business_object_base_path(layout: SourceLayout, entity: str) -> str:
    return _join(layout, layout.business_objects_base, f"{entity}LocationBase.vb")


def location_base_path(layout: SourceLayout) -> str:
    return _join(layout, layout.business_objects, "Location.vb")


def list_path(layout: SourceLayout, entity: str) -> str:
    return _join(layout, layout.lists, f"{entity}LocationSearch.vb")


def reference_projects_for_prompt(layout: SourceLayout) -> str:
    refs = dict(layout.reference_projects)
    refs.update(layout.target_projects)
    if not refs:
        return "- (no reference projects configured)"
    return "\n".join(f"- {name}: {path}" for name, path in sorted(refs.items()))


def input_artifacts_for_prompt(input_paths: Dict[str, str]) -> str:
    if not input_paths:
        return "- (none)"
    return "\n".join(f"- {name}: {path}" for name, path in input_paths.items())


def available_forms(layout: SourceLayout) -> List[str]:
    """Form names (without .vb) in the legacy Forms directory, designer files excluded."""
    directory = forms_directory(layout)
    if not layout.input_directory or not os.path.isdir(directory):
        return []
    forms = []
    for name in sorted(os.listdir(directory)):
        if not name.endswith(".vb") or name.endswith(".Designer.vb"):
            continue
        if not name.lower().startswith("frm"):
            continue
        forms.append(name[:-3])
    return forms


def entity_is_known(layout: SourceLayout, entity: str) -> Optional[bool]:
    """
    True/False when the legacy forms directory is available to check against,
    None when there is nothing to check.
    """
    forms = available_forms(layout)
    if not forms:
        return None
    wanted = {f"frm{entity}{t}".lower() for t in FORM_TYPES} | {f"frm{entity}".lower()}
    return any(f.lower() in wanted for f in forms)
