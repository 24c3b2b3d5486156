from typing import Any, Dict

from modules.common.paths import business_object_path, input_artifacts_for_prompt
from modules.common.stage_cli import run_stage
from schemas import SourceLayout

MODULE_ID = "related_entities_v1"


def build_prompt(entity: str, params: Dict[str, Any], layout: SourceLayout, output_path: str,
                 input_paths: Dict[str, str]) -> str:
    return f"""TASK: Extract entity relationships for {entity}.

TARGET FILES:
- Business object: {business_object_path(layout, entity)}

INPUT ARTIFACTS:
{input_artifacts_for_prompt(input_paths)}

ANALYSIS GOALS:
1. Identify child collection properties
2. Extract CRUD methods for related entities
3. Identify grid structures for related entities
4. Extract parent-child key relationships

OUTPUT:
Generate a JSON file at: {output_path}

Begin analysis.
"""


def main():
    raise SystemExit(run_stage(MODULE_ID, "Extract child collections and parent-child relationships of an entity."))


if __name__ == "__main__":
    main()
