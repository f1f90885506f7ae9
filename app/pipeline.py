from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from app.errors import ProcyardError
from app.logger import get_logger
from app.metrics import observe_pipeline_step, record_pipeline_run

_logger = get_logger("pipeline")

StepFn = Callable[[], Awaitable[Optional[str]]]


@dataclass(frozen=True)
class PipelineStep:
    name: str
    run: StepFn
    timeout_seconds: Optional[float] = None


@dataclass(frozen=True)
class StepResult:
    name: str
    ok: bool
    detail: str = ""
    duration_ms: float = 0.0


@dataclass
class PipelineResult:
    pipeline: str
    steps: List[StepResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(step.ok for step in self.steps)

    @property
    def failed_step(self) -> Optional[str]:
        for step in self.steps:
            if not step.ok:
                return step.name
        return None

    @property
    def error(self) -> str:
        for step in self.steps:
            if not step.ok:
                return step.detail
        return ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "pipeline": self.pipeline,
            "ok": self.ok,
            "failed_step": self.failed_step,
            "error": self.error,
            "steps": [
                {
                    "name": step.name,
                    "ok": step.ok,
                    "detail": step.detail,
                    "duration_ms": step.duration_ms,
                }
                for step in self.steps
            ],
        }


async def run_pipeline(
    name: str,
    steps: Sequence[PipelineStep],
    **fields: Any,
) -> PipelineResult:
    """Run ``steps`` in order and stop at the first one that fails.

    A step fails when it raises or exceeds its timeout. The failure is captured
    in the returned result rather than re-raised so callers can persist the
    failed state before reporting it.
    """
    result = PipelineResult(pipeline=name)
    async with _logger.operation(
        f"pipeline.{name}",
        "Running pipeline",
        steps=len(steps),
        **fields,
    ) as op:
        for step in steps:
            started = perf_counter()
            try:
                if step.timeout_seconds:
                    detail = await asyncio.wait_for(step.run(), timeout=step.timeout_seconds)
                else:
                    detail = await step.run()
            except asyncio.CancelledError:
                raise
            except TimeoutError:
                message = f"timed out after {step.timeout_seconds}s"
                result.steps.append(_finish(name, step.name, False, message, started))
                op.step_error(step.name, "Pipeline step timed out", error=message)
                break
            except ProcyardError as exc:
                result.steps.append(_finish(name, step.name, False, exc.detail, started))
                op.step_error(
                    step.name,
                    "Pipeline step failed",
                    error_type=type(exc).__name__,
                    error=exc.detail,
                )
                break
            except Exception as exc:  # noqa: BLE001
                result.steps.append(_finish(name, step.name, False, str(exc) or type(exc).__name__, started))
                _logger.exception(
                    "pipeline.step.crash",
                    "Pipeline step raised an unexpected error",
                    pipeline=name,
                    step=step.name,
                    error_type=type(exc).__name__,
                )
                break
            finished = _finish(name, step.name, True, detail or "", started)
            result.steps.append(finished)
            op.step(step.name, detail or "Step completed", duration_ms=finished.duration_ms)

        record_pipeline_run(pipeline=name, ok=result.ok)
        if not result.ok:
            op.step_warning(
                "pipeline.abort",
                "Pipeline stopped at failed step",
                failed_step=result.failed_step,
                completed=len(result.steps) - 1,
            )
    return result


def _finish(pipeline: str, step: str, ok: bool, detail: str, started: float) -> StepResult:
    duration = perf_counter() - started
    observe_pipeline_step(pipeline=pipeline, step=step, duration_seconds=duration)
    return StepResult(name=step, ok=ok, detail=detail, duration_ms=round(duration * 1000, 1))
