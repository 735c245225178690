"""Stage descriptors and the sequential driver that runs them."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from .errors import ConfigurationError, WorkflowError


LOGGER = logging.getLogger(__name__)


COMPLETED = "completed"
SKIPPED = "skipped"
FAILED = "failed"
BLOCKED = "blocked"


@dataclass(frozen=True)
class Stage:
    """One unit of work producing ``output`` (plus ``also_writes``) from ``inputs`` (paths or URLs)."""

    name: str
    region: Optional[str]
    inputs: Tuple[Union[Path, str], ...]
    output: Path
    action: Callable[[], Any]
    depends_on: Tuple[str, ...] = ()
    also_writes: Tuple[Path, ...] = ()

    @property
    def outputs(self) -> Tuple[Path, ...]:
        return (self.output,) + self.also_writes

    def output_exists(self) -> bool:
        for path in self.outputs:
            if path.is_dir():
                if not any(path.iterdir()):
                    return False
            elif not path.exists():
                return False
        return True


@dataclass(frozen=True)
class StageResult:
    """Outcome of one stage; failed results name the input to resume from."""

    status: str
    stage: str
    region: Optional[str]
    inputs: Tuple[Union[Path, str], ...]
    output: Path
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (COMPLETED, SKIPPED)

    @property
    def input_path(self) -> Optional[Union[Path, str]]:
        return self.inputs[0] if self.inputs else None


def order_stages(stages: Iterable[Stage]) -> List[Stage]:
    """Order stages so dependencies run first, otherwise keeping declaration order."""

    pending = list(stages)
    names: Set[str] = set()
    for stage in pending:
        if stage.name in names:
            raise ConfigurationError(f"Duplicate stage name '{stage.name}'")
        names.add(stage.name)
    for stage in pending:
        unknown = [dep for dep in stage.depends_on if dep not in names]
        if unknown:
            raise ConfigurationError(
                f"Stage '{stage.name}' depends on unknown stage(s): {', '.join(unknown)}"
            )

    ordered: List[Stage] = []
    done: Set[str] = set()
    while pending:
        for index, stage in enumerate(pending):
            if all(dep in done for dep in stage.depends_on):
                ordered.append(stage)
                done.add(stage.name)
                del pending[index]
                break
        else:
            cycle = ", ".join(stage.name for stage in pending)
            raise ConfigurationError(f"Stage dependencies form a cycle among: {cycle}")
    return ordered


def _result(stage: Stage, status: str, exc: Optional[BaseException] = None, error: Optional[str] = None) -> StageResult:
    return StageResult(
        status=status,
        stage=stage.name,
        region=stage.region,
        inputs=stage.inputs,
        output=stage.output,
        error=error if error is not None else (str(exc) if exc is not None else None),
        error_type=type(exc).__name__ if exc is not None else None,
    )


def run_stages(
    stages: Sequence[Stage],
    resume: bool = True,
    start_at: Optional[str] = None,
) -> List[StageResult]:
    """Run ``stages`` one at a time in dependency order.

    A stage whose outputs already exist is skipped when ``resume`` is set.
    A stage raising :class:`WorkflowError` is recorded as failed and every
    later stage of the same region, or depending on it, is blocked.
    ``start_at`` treats every stage ordered before it as already done.
    """

    ordered = order_stages(stages)
    if start_at is not None and start_at not in {stage.name for stage in ordered}:
        raise ConfigurationError(f"Unknown stage '{start_at}' for --start-at")

    results: List[StageResult] = []
    unusable: Set[str] = set()
    failed_regions: Set[str] = set()
    reached_start = start_at is None
    total = len(ordered)

    for position, stage in enumerate(ordered, start=1):
        if not reached_start:
            if stage.name != start_at:
                LOGGER.info("Skipping stage %d/%d: %s (before %s)", position, total, stage.name, start_at)
                results.append(_result(stage, SKIPPED))
                continue
            reached_start = True

        blockers = [dep for dep in stage.depends_on if dep in unusable]
        if stage.region is not None and stage.region in failed_regions:
            blockers.append(f"region {stage.region}")
        if blockers:
            LOGGER.warning("Blocked stage %d/%d: %s (by %s)", position, total, stage.name, ", ".join(blockers))
            unusable.add(stage.name)
            results.append(_result(stage, BLOCKED, error=f"blocked by {', '.join(blockers)}"))
            continue

        if resume and stage.output_exists():
            LOGGER.info("Skipping stage %d/%d: %s; output exists -> %s", position, total, stage.name, stage.output)
            results.append(_result(stage, SKIPPED))
            continue

        LOGGER.info("Starting stage %d/%d: %s", position, total, stage.name)
        try:
            stage.action()
        except WorkflowError as exc:
            LOGGER.error("Stage %s failed (%s): %s", stage.name, type(exc).__name__, exc)
            unusable.add(stage.name)
            if stage.region is not None:
                failed_regions.add(stage.region)
            results.append(_result(stage, FAILED, exc))
            continue
        LOGGER.info("Finished stage %d/%d: %s -> %s", position, total, stage.name, stage.output)
        results.append(_result(stage, COMPLETED))

    summary: Dict[str, int] = {}
    for result in results:
        summary[result.status] = summary.get(result.status, 0) + 1
    LOGGER.info(
        "Stage summary: %s",
        ", ".join(f"{status}={count}" for status, count in sorted(summary.items())),
    )
    return results


__all__ = [
    "BLOCKED",
    "COMPLETED",
    "FAILED",
    "SKIPPED",
    "Stage",
    "StageResult",
    "order_stages",
    "run_stages",
]
