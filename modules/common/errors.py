"""
Failure taxonomy for conversion runs.

MissingDependency and GenerationFailure are stage-local: the runner turns them
into failed outcomes and the run moves on. ArtifactIOError and
InvalidInvocation abort the whole run.
"""

EXIT_OK = 0
EXIT_STAGE_FAILURES = 1
EXIT_INVALID_INVOCATION = 2
EXIT_IO_FAILURE = 3
EXIT_INTERRUPTED = 130


class PipelineError(Exception):
    pass


class InvalidInvocation(PipelineError):
    """Bad arguments, unknown entity, bad recipe. Raised before any stage runs."""


class ArtifactIOError(PipelineError):
    """The artifact store could not touch its backing directory."""


class ArtifactNotFound(LookupError):
    """No artifact has been produced yet for (entity, stage)."""

    def __init__(self, entity: str, stage: str):
        super().__init__(f"no artifact for stage '{stage}' of entity '{entity}'")
        self.entity = entity
        self.stage = stage


class MissingDependency(PipelineError):
    def __init__(self, stage: str, needed: str):
        super().__init__(f"input '{needed}' for stage '{stage}' was never produced")
        self.stage = stage
        self.needed = needed


class GenerationFailure(PipelineError):
    """The agent raised, exited non-zero, or returned something unusable."""


class RunInterrupted(KeyboardInterrupt):
    """Ctrl-C during a run. Carries the report of the stages that finished before it."""

    def __init__(self, report):
        super().__init__(f"run {report.run_id} interrupted")
        self.report = report
