"""Accumulator for multi-step operations that keep going after a step fails."""

from dataclasses import dataclass, field


@dataclass
class StepFailure:
    step: str
    error: str
    code: str | None = None
    entity_id: str | None = None

    def to_dict(self) -> dict:
        data = {"step": self.step, "error": self.error}
        if self.code:
            data["code"] = self.code
        if self.entity_id:
            data["entity_id"] = self.entity_id
        return data


@dataclass
class Outcome:
    """Collects per-step successes, counts and failures.

    The caller decides what the failures mean: a disconnect only cares whether
    the final step went through, a sync job only fails on its first step.
    """

    completed: list[str] = field(default_factory=list)
    failures: list[StepFailure] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)

    def succeed(self, step: str, count: int | None = None) -> None:
        self.completed.append(step)
        if count is not None:
            self.counts[step] = self.counts.get(step, 0) + count

    def add(self, key: str, count: int = 1) -> None:
        self.counts[key] = self.counts.get(key, 0) + count

    def fail(self, step: str, exc: BaseException, entity_id: str | None = None) -> StepFailure:
        failure = StepFailure(
            step=step,
            error=getattr(exc, "message", None) or str(exc) or exc.__class__.__name__,
            code=getattr(exc, "code", None) if isinstance(getattr(exc, "code", None), str) else None,
            entity_id=entity_id,
        )
        self.failures.append(failure)
        return failure

    def failed(self, step: str) -> bool:
        return any(f.step == step for f in self.failures)

    def succeeded(self, step: str) -> bool:
        return step in self.completed

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict:
        return {
            "completed": list(self.completed),
            "counts": dict(self.counts),
            "errors": [f.to_dict() for f in self.failures],
        }
