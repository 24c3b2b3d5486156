import os
from contextlib import contextmanager
from typing import Iterable, List, Optional, Set

try:
    import fcntl
except ImportError:  # pragma: no cover - fcntl not on Windows
    fcntl = None

from modules.common.artifact_store import ArtifactStore
from modules.common.errors import ArtifactIOError, InvalidInvocation, RunInterrupted
from modules.common.stage_runner import StageRunner
from modules.common.utils import ProgressLogger, utc_now
from schemas import RunReport, StageDescriptor, StageOutcome

LOCK_FILE = ".pipeline.lock"


def validate_stage_order(stages: Iterable[StageDescriptor]) -> List[StageDescriptor]:
    """
    Sort by ordinal and check the forward-only dependency rule:
    a stage may only need stages with a lower ordinal.
    """
    ordered = sorted(stages, key=lambda s: s.ordinal)
    seen_names: Set[str] = set()
    seen_ordinals: Set[int] = set()
    for stage in ordered:
        if stage.name in seen_names:
            raise InvalidInvocation(f"duplicate stage name '{stage.name}'")
        if stage.ordinal in seen_ordinals:
            raise InvalidInvocation(f"duplicate ordinal {stage.ordinal} at stage '{stage.name}'")
        for needed in stage.needs:
            if needed not in seen_names:
                raise InvalidInvocation(f"stage '{stage.name}' needs '{needed}', which is not an earlier stage")
        seen_names.add(stage.name)
        seen_ordinals.add(stage.ordinal)
    return ordered


def resolve_skip_steps(tokens: Iterable[str], stages: Iterable[StageDescriptor]) -> Set[str]:
    """Map --skip-steps tokens (1-based step numbers or stage names) to stage names."""
    by_ordinal = {s.ordinal: s.name for s in stages}
    names = set(by_ordinal.values())
    skip: Set[str] = set()
    for raw in tokens:
        token = raw.strip()
        if not token:
            continue
        if token.isdigit():
            if int(token) not in by_ordinal:
                raise InvalidInvocation(f"--skip-steps: no step number {token} (valid: 1-{max(by_ordinal, default=0)})")
            skip.add(by_ordinal[int(token)])
        elif token in names:
            skip.add(token)
        else:
            raise InvalidInvocation(f"--skip-steps: unknown stage '{token}'")
    return skip


def completed_stages(store: ArtifactStore, entity: str, stages: Iterable[StageDescriptor]) -> Set[str]:
    """Stages whose artifact is already present, for --skip-done."""
    return {s.name for s in stages if store.exists(entity, s.name)}


@contextmanager
def entity_lock(entity_dir: str, enabled: bool = True):
    """
    Advisory per-entity lock held for a whole run. The OS drops it when the
    process dies, so a crashed run never blocks the resume.
    """
    if not enabled or fcntl is None:
        yield
        return
    try:
        os.makedirs(entity_dir, exist_ok=True)
        handle = open(os.path.join(entity_dir, LOCK_FILE), "a+")
    except OSError as e:
        raise ArtifactIOError(f"cannot create lock in {entity_dir}: {e}") from e
    try:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise InvalidInvocation(f"another conversion run holds the lock on {entity_dir}") from None
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    finally:
        handle.close()


class Orchestrator:
    """
    Walks the stage list once, in ordinal order, and reports every outcome.

    Failures are recorded and the walk continues; a later stage that needed the
    failed stage's artifact reports MissingDependency on its own. Only storage
    errors stop the run. Ctrl-C stops it too, and the partial report travels on
    RunInterrupted.
    """

    def __init__(self, runner: StageRunner, logger: Optional[ProgressLogger] = None, run_id: str = "run"):
        self.runner = runner
        self.logger = logger
        self.run_id = run_id

    def execute(self, entity: str, skip: Set[str], stages: List[StageDescriptor],
                interactive: Optional[bool] = None) -> RunReport:
        ordered = validate_stage_order(stages)
        unknown = set(skip) - {s.name for s in ordered}
        if unknown:
            raise InvalidInvocation(f"skip set names unknown stages: {sorted(unknown)}")

        report = RunReport(run_id=self.run_id, entity=entity, started_at=utc_now())
        total = len(ordered)
        for stage in ordered:
            if stage.name in skip:
                print(f"[skip] {stage.ordinal:02d}/{total} {stage.name}")
                if self.logger:
                    self.logger.log(stage.name, "skipped", ordinal=stage.ordinal, module_id=stage.module_id,
                                    message="Skipped per skip set", stage_description=stage.description)
                report.outcomes.append(StageOutcome(stage=stage.name, ordinal=stage.ordinal, status="skipped"))
                continue
            try:
                outcome = self.runner.run(stage, entity, interactive=interactive)
            except KeyboardInterrupt:
                report.interrupted = True
                report.ended_at = utc_now()
                raise RunInterrupted(report) from None
            report.outcomes.append(outcome)
        report.ended_at = utc_now()
        return report
