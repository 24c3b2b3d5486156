import os
import re
from typing import Any, Dict, List, Optional, Literal
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


ENTITY_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")
STAGE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9-]*$")
ARTIFACT_FORMATS = {".json": "json", ".md": "markdown"}


class SourceLayout(BaseModel):
    """Where the legacy WinForms sources live, relative to input_directory."""
    model_config = ConfigDict(frozen=True)

    input_directory: Optional[str] = None
    forms: str = "Forms"
    business_objects: str = "BusinessObjects"
    business_objects_base: str = "BusinessObjects/Base"
    lists: str = "Lists"
    reference_projects: Dict[str, str] = Field(default_factory=dict)
    target_projects: Dict[str, str] = Field(default_factory=dict)


class AgentSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    backend: Literal["claude-cli", "openai", "mock"] = "claude-cli"
    command: List[str] = Field(default_factory=lambda: ["claude"])
    model: Optional[str] = None
    openai_model: str = "gpt-4.1-mini"
    extra_flags: Dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: Optional[float] = None

    @field_validator("command")
    def command_not_empty(cls, v):
        if not v:
            raise ValueError("agent command must not be empty")
        return v


class RunConfig(BaseModel):
    """Everything a run needs to know about its surroundings. Built once per invocation."""
    model_config = ConfigDict(frozen=True)

    project_root: str
    output_root: str
    tasks_dir: str
    source: SourceLayout = Field(default_factory=SourceLayout)
    agent: AgentSettings = Field(default_factory=AgentSettings)

    def entity_dir(self, entity: str) -> str:
        return os.path.join(self.output_root, entity)


class StageDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    ordinal: int = Field(ge=1)
    module_id: str
    stage_type: str = "analyze"
    needs: List[str] = Field(default_factory=list)
    artifact: str
    params: Dict[str, Any] = Field(default_factory=dict)
    description: Optional[str] = None
    interactive: bool = False
    reads_task_files: bool = False
    system_prompt: str = ""
    prompt_entrypoint: Optional[str] = None
    settings: Optional[str] = None
    mcp_config: Optional[str] = None

    @field_validator("name")
    def name_is_slug(cls, v):
        if not STAGE_NAME_PATTERN.match(v):
            raise ValueError(f"stage name must be a lowercase slug, got {v!r}")
        return v

    @field_validator("artifact")
    def artifact_has_known_extension(cls, v):
        ext = os.path.splitext(v)[1].lower()
        if ext not in ARTIFACT_FORMATS:
            raise ValueError(f"artifact must end in one of {sorted(ARTIFACT_FORMATS)}, got {v!r}")
        if os.path.basename(v) != v:
            raise ValueError(f"artifact must be a bare file name, got {v!r}")
        return v

    @model_validator(mode="after")
    def no_self_dependency(self):
        if self.name in self.needs:
            raise ValueError(f"stage '{self.name}' cannot need itself")
        return self

    @property
    def artifact_format(self) -> str:
        return ARTIFACT_FORMATS[os.path.splitext(self.artifact)[1].lower()]


class StageRequest(BaseModel):
    """What an executor gets for one stage invocation."""
    descriptor: StageDescriptor
    entity: str
    prompt: str
    inputs: Dict[str, str] = Field(default_factory=dict)
    staging_path: str
    interactive: bool = False


StageStatus = Literal["succeeded", "failed", "skipped"]
StageError = Literal["MissingDependency", "GenerationFailure"]


class StageOutcome(BaseModel):
    stage: str
    ordinal: int
    status: StageStatus
    error: Optional[StageError] = None
    reason: Optional[str] = None
    artifact: Optional[str] = None
    wall_seconds: Optional[float] = None

    @model_validator(mode="after")
    def error_only_on_failure(self):
        if self.status == "failed" and not self.error:
            raise ValueError("failed outcomes need an error kind")
        if self.status != "failed" and self.error:
            raise ValueError(f"{self.status} outcome cannot carry error {self.error}")
        return self

    def label(self) -> str:
        if self.status == "failed":
            detail = self.reason or self.error
            if self.error == "MissingDependency":
                return f"Failed(MissingDependency: {detail})"
            return f"Failed({detail})"
        return self.status.capitalize()


class RunReport(BaseModel):
    run_id: str
    entity: str
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    outcomes: List[StageOutcome] = Field(default_factory=list)
    interrupted: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.interrupted

    @property
    def failed(self) -> List[StageOutcome]:
        return [o for o in self.outcomes if o.status == "failed"]

    def statuses(self) -> Dict[str, str]:
        return {o.stage: o.status for o in self.outcomes}

    def render(self) -> str:
        lines = [f"# Run Report - {self.entity} ({self.run_id})", ""]
        lines.append("| # | stage | outcome | wall_s |")
        lines.append("|---:|---|---|---:|")
        for o in self.outcomes:
            wall = f"{o.wall_seconds:.2f}" if o.wall_seconds is not None else "-"
            lines.append(f"| {o.ordinal} | {o.stage} | {o.label()} | {wall} |")
        lines.append("")
        succeeded = sum(1 for o in self.outcomes if o.status == "succeeded")
        skipped = sum(1 for o in self.outcomes if o.status == "skipped")
        lines.append(f"{succeeded} succeeded, {len(self.failed)} failed, {skipped} skipped")
        if self.interrupted:
            lines.append("Interrupted before every stage ran.")
        return "\n".join(lines)


class StageState(BaseModel):
    status: Literal["running", "done", "failed", "skipped"]
    ordinal: Optional[int] = None
    artifact: Optional[str] = None
    updated_at: Optional[str] = None
    module_id: Optional[str] = None
    description: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None


class PipelineState(BaseModel):
    run_id: Optional[str] = None
    entity: Optional[str] = None
    stages: Dict[str, StageState] = Field(default_factory=dict)


class AgentCallUsage(BaseModel):
    schema_version: str = "agent_call_v1"
    model: str
    provider: str = "openai"
    prompt_tokens: int
    completion_tokens: int
    request_ms: Optional[float] = None
    request_id: Optional[str] = None
    stage_id: Optional[str] = None
    run_id: Optional[str] = None
    created_at: Optional[str] = None

    @field_validator("prompt_tokens", "completion_tokens")
    def non_negative_tokens(cls, v):
        if v < 0:
            raise ValueError("token counts must be non-negative")
        return v

    @field_validator("request_ms")
    def non_negative_latency(cls, v):
        if v is not None and v < 0:
            raise ValueError("request_ms must be non-negative")
        return v
