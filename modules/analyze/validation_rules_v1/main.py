from typing import Any, Dict

from modules.common.paths import business_object_path, form_path, form_path_by_name, input_artifacts_for_prompt
from modules.common.stage_cli import run_stage
from schemas import SourceLayout

MODULE_ID = "validation_rules_v1"


def build_prompt(entity: str, params: Dict[str, Any], layout: SourceLayout, output_path: str,
                 input_paths: Dict[str, str]) -> str:
    form = form_path_by_name(layout, params["form_name"]) if params.get("form_name") \
        else form_path(layout, entity, "Detail")
    return f"""TASK: Extract all validation rules for {entity}.

TARGET FILES:
- Form: {form}
- Business object: {business_object_path(layout, entity)}

INPUT ARTIFACTS:
{input_artifacts_for_prompt(input_paths)}

EXTRACTION GOALS:
1. Parse validation methods in forms (AreFieldsValid)
2. Extract business rules from CheckBusinessRules
3. Identify field-level constraints
4. Extract error messages
5. Identify validation triggers

OUTPUT:
Generate a JSON file at: {output_path}

Begin extraction.
"""


def main():
    raise SystemExit(run_stage(MODULE_ID, "Extract field and business validation rules of an entity."))


if __name__ == "__main__":
    main()
