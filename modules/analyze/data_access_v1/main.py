from typing import Any, Dict

from modules.common.paths import business_object_path, list_path
from modules.common.stage_cli import run_stage
from schemas import SourceLayout

MODULE_ID = "data_access_v1"


def build_prompt(entity: str, params: Dict[str, Any], layout: SourceLayout, output_path: str,
                 input_paths: Dict[str, str]) -> str:
    return f"""TASK: Extract data access patterns for {entity}.

TARGET FILES:
- List class: {list_path(layout, entity)}
- Business object CRUD methods: {business_object_path(layout, entity)}

GOALS:
1. Extract stored procedure name and parameters
2. Parse AddFetchParameters for search criteria
3. Extract result column mapping from ReadRow
4. Identify CRUD operations
5. Extract data formatting logic

OUTPUT:
Generate a JSON file at: {output_path}

Begin extraction.
"""


def main():
    raise SystemExit(run_stage(MODULE_ID, "Extract stored procedures, search criteria and CRUD operations."))


if __name__ == "__main__":
    main()
