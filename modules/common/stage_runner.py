import importlib
import json
import time
from typing import Callable, Dict, Optional

from modules.common.artifact_store import ArtifactStore
from modules.common.errors import ArtifactIOError, ArtifactNotFound, GenerationFailure, MissingDependency
from modules.common.executors import StageExecutor
from modules.common.utils import ProgressLogger
from schemas import RunConfig, StageDescriptor, StageOutcome, StageRequest

PromptBuilder = Callable[..., str]


def load_prompt_builder(entrypoint: str) -> PromptBuilder:
    """
    Resolve "modules/analyze/business_logic_v1/main.py:build_prompt" to the callable.
    """
    script, func = (entrypoint.split(":") + [None])[:2]
    module_name = script[:-3].replace("/", ".") if script.endswith(".py") else script
    module = importlib.import_module(module_name)
    return getattr(module, func or "build_prompt")


def default_prompt(descriptor: StageDescriptor, entity: str, output_path: str,
                   input_paths: Dict[str, str]) -> str:
    lines = [f"TASK: {descriptor.description or descriptor.name} for {entity}.", ""]
    if input_paths:
        lines.append("INPUT ARTIFACTS:")
        lines += [f"- {name}: {path}" for name, path in input_paths.items()]
        lines.append("")
    lines += ["OUTPUT:", f"Generate the file at: {output_path}", "", "Begin now."]
    return "\n".join(lines)


def check_artifact_content(descriptor: StageDescriptor, content) -> str:
    """Reject results no later stage could use. Returns the content unchanged."""
    if not isinstance(content, str) or not content.strip():
        raise GenerationFailure(f"unusable result for {descriptor.artifact}: empty output")
    if descriptor.artifact_format == "json":
        try:
            parsed = json.loads(content)
        except ValueError as e:
            raise GenerationFailure(f"unusable result for {descriptor.artifact}: invalid JSON ({e})") from None
        if not isinstance(parsed, (dict, list)):
            raise GenerationFailure(f"unusable result for {descriptor.artifact}: expected a JSON object or array")
    return content


class StageRunner:
    """
    Runs one stage: gather inputs, call the executor, commit the artifact.

    The artifact write is the last thing that happens, so an interrupted or failed
    stage leaves the store exactly as it found it.
    """

    def __init__(self, store: ArtifactStore, executor: StageExecutor, config: RunConfig,
                 logger: Optional[ProgressLogger] = None,
                 prompt_loader: Callable[[str], PromptBuilder] = load_prompt_builder):
        self.store = store
        self.executor = executor
        self.config = config
        self.logger = logger
        self.prompt_loader = prompt_loader

    def _log(self, descriptor: StageDescriptor, status: str, **kwargs):
        if self.logger:
            self.logger.log(descriptor.name, status, ordinal=descriptor.ordinal, module_id=descriptor.module_id,
                            stage_description=descriptor.description, **kwargs)

    def _failed(self, descriptor: StageDescriptor, error: str, reason: str, started: float) -> StageOutcome:
        elapsed = round(time.perf_counter() - started, 3)
        print(f"[fail] {descriptor.name}: {error}: {reason}")
        self._log(descriptor, "failed", error=error, message=reason, extra={"elapsed_seconds": elapsed})
        return StageOutcome(stage=descriptor.name, ordinal=descriptor.ordinal, status="failed",
                            error=error, reason=reason, wall_seconds=elapsed)

    def build_prompt(self, descriptor: StageDescriptor, entity: str, output_path: str,
                     input_paths: Dict[str, str]) -> str:
        if not descriptor.prompt_entrypoint:
            return default_prompt(descriptor, entity, output_path, input_paths)
        builder = self.prompt_loader(descriptor.prompt_entrypoint)
        return builder(entity=entity, params=dict(descriptor.params), layout=self.config.source,
                       output_path=output_path, input_paths=input_paths)

    def run(self, descriptor: StageDescriptor, entity: str, interactive: Optional[bool] = None) -> StageOutcome:
        started = time.perf_counter()

        inputs: Dict[str, str] = {}
        input_paths: Dict[str, str] = {}
        for needed in descriptor.needs:
            try:
                inputs[needed] = self.store.read(entity, needed)
            except ArtifactNotFound:
                return self._failed(descriptor, "MissingDependency",
                                    str(MissingDependency(descriptor.name, needed)), started)
            input_paths[needed] = self.store.path_for(entity, needed)
        if descriptor.reads_task_files:
            for name, text in self.store.task_files(entity).items():
                inputs[f"task:{name}"] = text

        interactive = descriptor.interactive if interactive is None else interactive
        staging_path = self.store.staging_path(entity, descriptor.name)
        print(f"[run] {descriptor.ordinal:02d} {descriptor.name} ({descriptor.module_id})"
              + (" [interactive]" if interactive else ""))
        self._log(descriptor, "running", message="started")

        try:
            prompt = self.build_prompt(descriptor, entity, staging_path, input_paths)
            request = StageRequest(descriptor=descriptor, entity=entity, prompt=prompt, inputs=inputs,
                                   staging_path=staging_path, interactive=interactive)
            content = check_artifact_content(descriptor, self.executor.generate(request))
        except ArtifactIOError:
            raise
        except Exception as e:
            return self._failed(descriptor, "GenerationFailure", str(e) or type(e).__name__, started)

        path = self.store.write(entity, descriptor.name, content)
        elapsed = round(time.perf_counter() - started, 3)
        print(f"[done] {descriptor.name} -> {path} ({elapsed:.2f}s)")
        self._log(descriptor, "done", artifact=path, message=f"Stage completed in {elapsed:.2f}s",
                  extra={"elapsed_seconds": elapsed})
        return StageOutcome(stage=descriptor.name, ordinal=descriptor.ordinal, status="succeeded",
                            artifact=path, wall_seconds=elapsed)
