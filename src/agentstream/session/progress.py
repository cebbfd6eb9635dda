from typing import List, Literal, Optional

from ..models import StatusStep


def stage_label(stage: str, message: str = "") -> str:
    """Status label: the server message, or the stage id in title case."""
    if message.strip():
        return message
    return " ".join(word.capitalize() for word in stage.split("_") if word)


class ProgressTracker:
    """Linear progress indicator keyed by stage id.

    A repeated stage updates its existing step in place; its position never
    changes.
    """

    def __init__(self, label_policy: Literal["latest", "first"] = "latest") -> None:
        self.label_policy = label_policy
        self._steps: List[StatusStep] = []
        self.active: Optional[str] = None

    @property
    def steps(self) -> List[StatusStep]:
        return list(self._steps)

    def upsert(self, stage: str, label: str) -> None:
        for index, step in enumerate(self._steps):
            if step.id == stage:
                if self.label_policy == "latest" and step.label != label:
                    self._steps[index] = StatusStep(id=stage, label=label)
                break
        else:
            self._steps.append(StatusStep(id=stage, label=label))
        self.active = stage

    def replace(self, stage: str, label: str) -> None:
        """Show only `stage` (pre-steps report one stage at a time)."""
        self._steps = [StatusStep(id=stage, label=label)]
        self.active = stage

    def ensure(self, stage: str, label: str) -> None:
        if all(step.id != stage for step in self._steps):
            self._steps.append(StatusStep(id=stage, label=label))
        self.active = stage

    def finish(self) -> None:
        self.active = None

    def clear(self) -> None:
        self._steps = []
        self.active = None
