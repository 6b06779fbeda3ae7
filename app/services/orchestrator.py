"""
Multi-step tool workflows.

A plan is a list of steps. A step may map fields of its input from the output
of an earlier step (`$step1.images[0].url`); such a reference is also what
makes it depend on that step. Steps run in waves: every step whose
dependencies have completed runs concurrently with the others in its wave.
"""

import asyncio
import re
import time
from typing import Any, Awaitable, Callable, Literal

from pydantic import BaseModel, Field

from app.core.exceptions import AppError, BadRequestError, GatewayTimeoutError
from app.core.logging import get_logger
from app.services.tool_registry import ToolDefinition, ToolRegistry, get_registry

log = get_logger(__name__)

StepExecutor = Callable[[ToolDefinition, dict[str, Any]], Awaitable[Any]]

DEFAULT_MAX_RETRIES = 1
DEFAULT_RETRY_BACKOFF = 2.0

_INDEXED = re.compile(r"^(\w+)\[(\d+)\]$")


class PlanStep(BaseModel):
    step_id: str
    tool_id: str
    input: dict[str, Any] = Field(default_factory=dict)
    input_mappings: dict[str, str] = Field(default_factory=dict)
    description: str = ""


class Plan(BaseModel):
    goal: str
    workflow_id: str | None = None
    steps: list[PlanStep]
    estimated_credits: float = 0.0
    estimated_duration_seconds: int = 0


class StepResult(BaseModel):
    step_id: str
    tool_id: str
    status: Literal["completed", "failed", "skipped"]
    result: Any = None
    error: str | None = None
    credits: float = 0.0
    duration_ms: int = 0


class OrchestrationResult(BaseModel):
    success: bool
    goal: str
    plan: Plan
    step_results: list[StepResult]
    final_output: Any = None
    total_duration_ms: int
    total_credits: float


def _ai_influencer(params: dict[str, Any]) -> Plan:
    return Plan(
        goal="Create an AI influencer video with lip-synced speech",
        steps=[
            PlanStep(
                step_id="step1",
                tool_id="image.generate.flux-pro-kontext",
                input={
                    "prompt": params.get("portrait_prompt")
                    or "Professional portrait of a friendly presenter, studio lighting",
                    "image_size": "portrait_4_3",
                },
                description="Generate the portrait image",
            ),
            PlanStep(
                step_id="step2",
                tool_id="audio.tts",
                input={
                    "text": params.get("script") or "Hello, welcome to my channel!",
                    "audio_url": params.get("voice_reference_url") or "",
                    "language": params.get("language") or "en",
                },
                description="Generate speech from the script",
            ),
            PlanStep(
                step_id="step3",
                tool_id="audio.lip-sync",
                input_mappings={
                    "face_image_url": "$step1.images[0].url",
                    "audio_url": "$step2.audio_file.url",
                },
                description="Create the lip-synced video",
            ),
        ],
        estimated_duration_seconds=60,
    )


def _music_video(params: dict[str, Any]) -> Plan:
    return Plan(
        goal="Create a music video from a text description",
        steps=[
            PlanStep(
                step_id="step1",
                tool_id="music.generate",
                input={
                    "prompt": params.get("music_prompt") or "Upbeat electronic music with synths",
                    "duration": params.get("duration") or 30,
                },
                description="Generate the music track",
            ),
            PlanStep(
                step_id="step2",
                tool_id="image.generate.flux-pro-kontext",
                input={
                    "prompt": params.get("visual_prompt") or "Abstract colorful visualization, dynamic movement",
                    "image_size": "landscape_16_9",
                },
                description="Generate the visual keyframe",
            ),
            PlanStep(
                step_id="step3",
                tool_id="video.generate.veo3-image-to-video",
                input={
                    "prompt": params.get("motion_prompt") or "Smooth camera movement, dynamic visual effects",
                    "duration": "8s",
                },
                input_mappings={"image_url": "$step2.images[0].url"},
                description="Animate the keyframe into a video",
            ),
        ],
        estimated_duration_seconds=120,
    )


def _product_visualization(params: dict[str, Any]) -> Plan:
    return Plan(
        goal="Create a 3D product visualization from a photo",
        steps=[
            PlanStep(
                step_id="step1",
                tool_id="image.extract-layer",
                input={"image_url": params.get("image_url") or ""},
                description="Remove the background from the product photo",
            ),
            PlanStep(
                step_id="step2",
                tool_id="image.upscale",
                input={"scale": 2, "creativity": 0.3},
                input_mappings={"image_url": "$step1.image.url"},
                description="Enhance the image resolution",
            ),
            PlanStep(
                step_id="step3",
                tool_id="3d.image-to-3d",
                input={"generate_type": "Normal"},
                input_mappings={"input_image_url": "$step2.image.url"},
                description="Convert to a 3D model",
            ),
        ],
        estimated_duration_seconds=90,
    )


def _audio_remix(params: dict[str, Any]) -> Plan:
    return Plan(
        goal="Separate stems from a track and create a remix backing track",
        steps=[
            PlanStep(
                step_id="step1",
                tool_id="audio.stem-separation",
                input={"audio_url": params.get("audio_url") or "", "stems": 4},
                description="Separate the track into stems",
            ),
            PlanStep(
                step_id="step2",
                tool_id="music.generate",
                input={
                    "prompt": params.get("remix_style") or "Lo-fi remix with chill beats and ambient pads",
                    "duration": params.get("duration") or 30,
                },
                description="Generate a backing track in the remix style",
            ),
        ],
        estimated_duration_seconds=45,
    )


WORKFLOW_TEMPLATES: dict[str, Callable[[dict[str, Any]], Plan]] = {
    "ai-influencer": _ai_influencer,
    "music-video": _music_video,
    "product-visualization": _product_visualization,
    "audio-remix": _audio_remix,
}

WORKFLOW_KEYWORDS: dict[str, tuple[str, ...]] = {
    "ai-influencer": ("influencer", "talking head", "lip sync", "lip-sync", "avatar", "spokesperson"),
    "music-video": ("music video", "music-video", "visualizer", "song video"),
    "product-visualization": ("product", "3d model", "3d", "packshot"),
    "audio-remix": ("remix", "stem", "stems", "acapella"),
}

WORKFLOW_REQUIRED_PARAMS: dict[str, tuple[str, ...]] = {
    "ai-influencer": ("voice_reference_url",),
    "music-video": (),
    "product-visualization": ("image_url",),
    "audio-remix": ("audio_url",),
}


def estimate_credits(plan: Plan, registry: ToolRegistry | None = None) -> float:
    registry = registry or get_registry()
    total = 0.0
    for step in plan.steps:
        price = registry.calculate_price(step.tool_id, step.input)
        total += price.credits if price else 0.0
    return round(total, 2)


def build_workflow(workflow_id: str, params: dict[str, Any] | None = None) -> Plan:
    template = WORKFLOW_TEMPLATES.get(workflow_id)
    if template is None:
        raise BadRequestError(
            f"Unknown workflow: {workflow_id}",
            details={"available": sorted(WORKFLOW_TEMPLATES)},
        )
    params = params or {}
    missing = [k for k in WORKFLOW_REQUIRED_PARAMS[workflow_id] if not params.get(k)]
    if missing:
        raise BadRequestError(
            f"Missing workflow parameters: {', '.join(missing)}",
            details={"workflow_id": workflow_id, "missing": missing},
        )
    plan = template(params)
    plan.workflow_id = workflow_id
    plan.estimated_credits = estimate_credits(plan)
    return plan


def list_workflows() -> list[dict[str, Any]]:
    out = []
    for workflow_id, template in WORKFLOW_TEMPLATES.items():
        preview = template({})
        out.append(
            {
                "id": workflow_id,
                "goal": preview.goal,
                "required_params": list(WORKFLOW_REQUIRED_PARAMS[workflow_id]),
                "steps": [
                    {"step_id": s.step_id, "tool_id": s.tool_id, "description": s.description}
                    for s in preview.steps
                ],
                "estimated_credits": estimate_credits(preview),
                "estimated_duration_seconds": preview.estimated_duration_seconds,
                "keywords": list(WORKFLOW_KEYWORDS[workflow_id]),
            }
        )
    return out


def plan_for_goal(goal: str, context: dict[str, Any] | None = None) -> Plan:
    """Pick the workflow whose keywords best match `goal`; `context` fills its parameters."""
    text = goal.lower()
    best, best_hits = None, 0
    for workflow_id, keywords in WORKFLOW_KEYWORDS.items():
        hits = sum(1 for k in keywords if k in text)
        if hits > best_hits:
            best, best_hits = workflow_id, hits
    if best is None:
        raise BadRequestError(
            "Could not match the goal to a workflow",
            details={"goal": goal, "available": sorted(WORKFLOW_TEMPLATES)},
        )
    plan = build_workflow(best, context)
    plan.goal = goal
    log.info("orchestrator_planned", workflow_id=best, steps=len(plan.steps))
    return plan


def resolve_input_mappings(
    input: dict[str, Any], mappings: dict[str, str], outputs: dict[str, Any]
) -> dict[str, Any]:
    resolved = dict(input)
    for key, ref in mappings.items():
        if not ref.startswith("$"):
            continue
        step_id, *path = ref[1:].split(".")
        value = outputs.get(step_id)
        for part in path:
            if value is None:
                break
            m = _INDEXED.match(part)
            if m:
                value = value.get(m.group(1)) if isinstance(value, dict) else None
                idx = int(m.group(2))
                value = value[idx] if isinstance(value, list) and idx < len(value) else None
            else:
                value = value.get(part) if isinstance(value, dict) else None
        if value is None:
            log.warning("orchestrator_mapping_unresolved", key=key, ref=ref)
            continue
        resolved[key] = value
    return resolved


def step_dependencies(steps: list[PlanStep]) -> dict[str, set[str]]:
    deps: dict[str, set[str]] = {}
    for step in steps:
        needed = set()
        for ref in step.input_mappings.values():
            if ref.startswith("$"):
                dep = ref[1:].split(".")[0]
                if dep and dep != step.step_id:
                    needed.add(dep)
        deps[step.step_id] = needed
    return deps


def _retryable(exc: Exception) -> bool:
    # a timed-out step already waited its full poll timeout
    if isinstance(exc, GatewayTimeoutError):
        return False
    if isinstance(exc, AppError):
        return exc.status_code >= 500
    return True


async def _run_with_retries(
    executor: StepExecutor,
    tool: ToolDefinition,
    input: dict[str, Any],
    max_retries: int,
    backoff: float,
) -> Any:
    attempt = 0
    while True:
        try:
            return await executor(tool, input)
        except Exception as e:
            if attempt >= max_retries or not _retryable(e):
                raise
            attempt += 1
            log.warning("orchestrator_step_retry", tool_id=tool.id, attempt=attempt, error=str(e))
            await asyncio.sleep(backoff * attempt)


async def execute_plan(
    plan: Plan,
    executor: StepExecutor,
    *,
    registry: ToolRegistry | None = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
    retry_backoff: float = DEFAULT_RETRY_BACKOFF,
) -> OrchestrationResult:
    registry = registry or get_registry()
    started = time.monotonic()
    log.info("orchestrator_executing", goal=plan.goal, steps=len(plan.steps))

    deps = step_dependencies(plan.steps)
    by_id = {s.step_id: s for s in plan.steps}
    remaining = [s.step_id for s in plan.steps]
    done: set[str] = set()
    failed: set[str] = set()
    outputs: dict[str, Any] = {}
    results: list[StepResult] = []

    async def run_step(step: PlanStep) -> StepResult:
        tool = registry.get(step.tool_id)
        if tool is None:
            return StepResult(
                step_id=step.step_id, tool_id=step.tool_id, status="skipped", error=f"Tool not found: {step.tool_id}"
            )
        step_started = time.monotonic()
        resolved = resolve_input_mappings(step.input, step.input_mappings, outputs)
        log.info("orchestrator_step_started", step_id=step.step_id, tool_id=step.tool_id)
        try:
            output = await _run_with_retries(executor, tool, resolved, max_retries, retry_backoff)
        except Exception as e:
            log.error("orchestrator_step_failed", step_id=step.step_id, tool_id=step.tool_id, error=str(e))
            message = e.message if isinstance(e, AppError) else str(e)
            return StepResult(
                step_id=step.step_id,
                tool_id=step.tool_id,
                status="failed",
                error=message,
                duration_ms=int((time.monotonic() - step_started) * 1000),
            )
        price = registry.calculate_price(step.tool_id, resolved)
        return StepResult(
            step_id=step.step_id,
            tool_id=step.tool_id,
            status="completed",
            result=output,
            credits=price.credits if price else 0.0,
            duration_ms=int((time.monotonic() - step_started) * 1000),
        )

    while remaining:
        ready: list[str] = []
        for step_id in list(remaining):
            step_deps = deps.get(step_id, set())
            if not step_deps <= done:
                continue
            if step_deps & failed:
                remaining.remove(step_id)
                done.add(step_id)
                failed.add(step_id)
                results.append(
                    StepResult(
                        step_id=step_id,
                        tool_id=by_id[step_id].tool_id,
                        status="skipped",
                        error="Skipped: dependency failed",
                    )
                )
                continue
            ready.append(step_id)

        if not ready:
            if remaining:
                for step_id in remaining:
                    results.append(
                        StepResult(
                            step_id=step_id,
                            tool_id=by_id[step_id].tool_id,
                            status="skipped",
                            error="Skipped: circular or unfulfillable dependency",
                        )
                    )
            break

        wave = await asyncio.gather(*(run_step(by_id[step_id]) for step_id in ready))
        for result in wave:
            results.append(result)
            remaining.remove(result.step_id)
            done.add(result.step_id)
            if result.status == "completed":
                outputs[result.step_id] = result.result
            else:
                failed.add(result.step_id)

    last_completed = next((r for r in reversed(results) if r.status == "completed"), None)
    total_credits = round(sum(r.credits for r in results), 2)
    success = all(r.status == "completed" for r in results)
    log.info("orchestrator_finished", goal=plan.goal, success=success, credits=total_credits)
    return OrchestrationResult(
        success=success,
        goal=plan.goal,
        plan=plan,
        step_results=results,
        final_output=last_completed.result if last_completed else None,
        total_duration_ms=int((time.monotonic() - started) * 1000),
        total_credits=total_credits,
    )
