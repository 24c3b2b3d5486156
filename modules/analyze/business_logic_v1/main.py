from typing import Any, Dict

from modules.common.paths import (business_object_base_path, business_object_path, location_base_path,
                                  reference_projects_for_prompt)
from modules.common.stage_cli import run_stage
from schemas import SourceLayout

MODULE_ID = "business_logic_v1"


def build_prompt(entity: str, params: Dict[str, Any], layout: SourceLayout, output_path: str,
                 input_paths: Dict[str, str]) -> str:
    return f"""TASK: Extract complete business logic from legacy VB.NET business objects for {entity}.

TARGET FILES:
- Business Object: {business_object_path(layout, entity)}
- Base Class: {business_object_base_path(layout, entity)}
- Location Base: {location_base_path(layout)}

OUTPUT:
Generate a JSON file at: {output_path}

Expected business object structure:
- Business Object: "{entity}Location"
- Base Class: "{entity}LocationBase"

ARCHITECTURE REFERENCES:
{reference_projects_for_prompt(layout)}

Begin extraction now.
"""


def main():
    raise SystemExit(run_stage(MODULE_ID, "Extract business rules and properties of an entity's business object."))


if __name__ == "__main__":
    main()
