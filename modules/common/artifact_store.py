import glob
import os
from typing import Dict, Iterable, List, Optional

from modules.common.errors import ArtifactIOError, ArtifactNotFound, InvalidInvocation
from modules.common.utils import atomic_write_text
from schemas import ENTITY_PATTERN, StageDescriptor

# Side-file spellings agents have been seen to use under .claude/tasks, beyond <Entity>_<stage_with_underscores>.json
TASK_FILE_ALIASES: Dict[str, List[str]] = {
    "related-entities": ["relationships"],
}


class ArtifactStore:
    """
    Directory-backed artifacts keyed by (entity, stage).

    Layout: <root>/<Entity>/<artifact file>. The file name for a stage comes from
    artifact_names (normally the plan's descriptors) and defaults to <stage>.json.
    Every write goes through a temp file + rename so readers never see half an artifact.
    """

    def __init__(self, root: str, artifact_names: Optional[Dict[str, str]] = None,
                 tasks_dir: Optional[str] = None):
        self.root = root
        self.artifact_names = dict(artifact_names or {})
        self.tasks_dir = tasks_dir

    @classmethod
    def for_stages(cls, root: str, stages: Iterable[StageDescriptor], tasks_dir: Optional[str] = None) -> "ArtifactStore":
        return cls(root, {s.name: s.artifact for s in stages}, tasks_dir=tasks_dir)

    def artifact_name(self, stage: str) -> str:
        return self.artifact_names.get(stage) or f"{stage}.json"

    def entity_dir(self, entity: str) -> str:
        if not ENTITY_PATTERN.match(entity or ""):
            raise InvalidInvocation(f"invalid entity name {entity!r}")
        return os.path.join(self.root, entity)

    def path_for(self, entity: str, stage: str) -> str:
        return os.path.join(self.entity_dir(entity), self.artifact_name(stage))

    def staging_path(self, entity: str, stage: str) -> str:
        """Scratch location an agent may write to before the runner commits the artifact."""
        return os.path.join(self.entity_dir(entity), ".staging", self.artifact_name(stage))

    def exists(self, entity: str, stage: str) -> bool:
        return os.path.isfile(self.path_for(entity, stage))

    def write(self, entity: str, stage: str, content: str) -> str:
        path = self.path_for(entity, stage)
        try:
            atomic_write_text(path, content)
        except OSError as e:
            raise ArtifactIOError(f"failed to write {path}: {e}") from e
        return path

    def read(self, entity: str, stage: str) -> str:
        path = self.path_for(entity, stage)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return f.read()
        except FileNotFoundError:
            raise ArtifactNotFound(entity, stage) from None
        except OSError as e:
            raise ArtifactIOError(f"failed to read {path}: {e}") from e

    def get(self, entity: str, stage: str, default: Optional[str] = None) -> Optional[str]:
        try:
            return self.read(entity, stage)
        except ArtifactNotFound:
            return default

    def task_file_candidates(self, entity: str, stage: str) -> List[str]:
        if not self.tasks_dir:
            return []
        stems = [stage.replace("-", "_")] + TASK_FILE_ALIASES.get(stage, [])
        return [os.path.join(self.tasks_dir, f"{entity}_{stem}.json") for stem in stems]

    def read_task_file(self, entity: str, stage: str) -> Optional[str]:
        for candidate in self.task_file_candidates(entity, stage):
            if os.path.isfile(candidate):
                try:
                    with open(candidate, "r", encoding="utf-8") as f:
                        return f.read()
                except OSError as e:
                    raise ArtifactIOError(f"failed to read side file {candidate}: {e}") from e
        return None

    def task_files(self, entity: str) -> Dict[str, str]:
        """All .claude/tasks side files for an entity, keyed by file name, in name order."""
        if not self.tasks_dir or not os.path.isdir(self.tasks_dir):
            return {}
        found: Dict[str, str] = {}
        for path in sorted(glob.glob(os.path.join(self.tasks_dir, f"{glob.escape(entity)}_*.json"))):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    found[os.path.basename(path)] = f.read()
            except OSError as e:
                raise ArtifactIOError(f"failed to read side file {path}: {e}") from e
        return found
