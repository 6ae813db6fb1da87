"""
Task Handlers - one handler per TaskType, dispatched through a registry.

Every handler implements the same contract:
    validate(payload)                  -> raises ValidationError before any side effect
    execute(payload, progress)         -> HandlerResult, or raises UpstreamProviderError

Prompt wording is an opaque contract with the AI provider; handlers own only
the required payload fields, the progress stages and the result shape.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, ClassVar, Protocol

from riresume.config import Settings
from riresume.exceptions import UpstreamProviderError, ValidationError
from riresume.models.api import TaskType
from riresume.models.domain import CompletionRequest
from riresume.services.ai_gateway import AIProviderGateway

ProgressCallback = Callable[[int, str], Awaitable[None]]


@dataclass(frozen=True)
class HandlerResult:
    """Output of a successful handler run."""

    content: dict[str, Any]
    result_id: str | None = None


class TaskHandler(Protocol):
    """Uniform contract for every task type."""

    def validate(self, payload: dict[str, Any]) -> None: ...

    async def execute(
        self, payload: dict[str, Any], progress: ProgressCallback
    ) -> HandlerResult: ...


async def no_progress(progress: int, stage: str) -> None:
    """Progress sink for synchronous generations that have no task to update."""
    return None


def cost_for(task_type: TaskType, settings: Settings) -> int:
    """Token cost charged when a task of this type is run."""
    costs = {
        TaskType.ANALYZE: settings.cost_analyze,
        TaskType.OPTIMIZE: settings.cost_optimize,
        TaskType.ADD_SKILL: settings.cost_add_skill,
        TaskType.PREP_GUIDE: settings.cost_prep_guide,
        TaskType.COVER_LETTER: settings.cost_cover_letter,
        TaskType.TRAINING_SLIDESHOW: settings.cost_training_slideshow,
        TaskType.RECOMMENDATION: settings.cost_recommendation,
    }
    return costs[task_type]


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, default=str)


class PromptTaskHandler:
    """
    Base handler: one structured AI completion bracketed by progress updates.

    Subclasses declare the payload fields they need, the stage label shown
    while the AI call runs, the prompt, and the keys the response must carry.
    """

    task_type: ClassVar[TaskType]
    required_fields: ClassVar[tuple[str, ...]] = ()
    required_response_keys: ClassVar[tuple[str, ...]] = ()
    working_stage: ClassVar[str] = "Generating..."
    system_instruction: ClassVar[str] = ""
    max_output_tokens: ClassVar[int | None] = None

    def __init__(self, gateway: AIProviderGateway) -> None:
        self.gateway = gateway

    def validate(self, payload: dict[str, Any]) -> None:
        """Reject payloads missing required fields."""
        missing = [name for name in self.required_fields if not payload.get(name)]
        if missing:
            raise ValidationError(
                f"{self.task_type.value} payload missing required fields: {', '.join(missing)}"
            )

    def build_user_content(self, payload: dict[str, Any]) -> str:
        raise NotImplementedError

    def shape_result(self, data: dict[str, Any]) -> dict[str, Any]:
        """Pick the result fields out of the parsed response."""
        return data

    async def execute(self, payload: dict[str, Any], progress: ProgressCallback) -> HandlerResult:
        self.validate(payload)
        await progress(10, "Preparing request...")

        request = CompletionRequest(
            system_instruction=self.system_instruction,
            user_content=self.build_user_content(payload),
            max_output_tokens=self.max_output_tokens,
            structured=True,
        )
        await progress(30, self.working_stage)
        completion = await self.gateway.complete(request)

        data = completion.data or {}
        missing = [key for key in self.required_response_keys if key not in data]
        if missing:
            raise UpstreamProviderError(
                f"{completion.provider} response missing keys: {', '.join(missing)}"
            )

        await progress(90, "Finalizing...")
        # target_id names the caller-owned artifact this result belongs to
        return HandlerResult(content=self.shape_result(data), result_id=payload.get("target_id"))


class AnalyzeHandler(PromptTaskHandler):
    task_type = TaskType.ANALYZE
    required_fields = ("resume", "job")
    required_response_keys = ("atsScore",)
    working_stage = "Analyzing resume against the job..."
    system_instruction = (
        "You are an expert ATS analyst. Score the resume against the job and list "
        "matched and missing skills. Return a JSON object with 'atsScore' and 'matchAnalysis'."
    )

    def build_user_content(self, payload: dict[str, Any]) -> str:
        return f"RESUME:\n{_dump(payload['resume'])}\n\nTARGET JOB:\n{_dump(payload['job'])}"


class OptimizeHandler(PromptTaskHandler):
    task_type = TaskType.OPTIMIZE
    required_fields = ("resume", "job")
    required_response_keys = ("optimizedResume",)
    working_stage = "Optimizing resume..."
    max_output_tokens = 10000
    system_instruction = (
        "You are an expert resume engine. Optimize the provided resume for the target job "
        "while maintaining truthfulness. Return a JSON object with 'optimizedResume' and "
        "'changes' (array of change objects)."
    )

    def build_user_content(self, payload: dict[str, Any]) -> str:
        analysis = payload.get("analysis") or {}
        return (
            f"ORIGINAL RESUME:\n{_dump(payload['resume'])}\n\n"
            f"TARGET JOB:\n{_dump(payload['job'])}\n\n"
            f"CURRENT ATS SCORE: {analysis.get('atsScore', 'unknown')}"
        )

    def shape_result(self, data: dict[str, Any]) -> dict[str, Any]:
        return {"optimizedResume": data["optimizedResume"], "changes": data.get("changes", [])}


class AddSkillHandler(PromptTaskHandler):
    task_type = TaskType.ADD_SKILL
    required_fields = ("resume", "skill", "target_sections")
    required_response_keys = ("optimizedResume",)
    working_stage = "Adding skill..."
    system_instruction = (
        "You are an expert resume editor. Add the given skill to the requested sections "
        "with natural, impactful wording. Return a JSON object with 'optimizedResume' and 'changes'."
    )

    def validate(self, payload: dict[str, Any]) -> None:
        super().validate(payload)
        if not isinstance(payload["target_sections"], list):
            raise ValidationError("add_skill payload target_sections must be a list")

    def build_user_content(self, payload: dict[str, Any]) -> str:
        return (
            f"TASK: Add the skill \"{payload['skill']}\" to the following sections: "
            f"{', '.join(str(s) for s in payload['target_sections'])}.\n\n"
            f"RESUME:\n{_dump(payload['resume'])}"
        )

    def shape_result(self, data: dict[str, Any]) -> dict[str, Any]:
        return {"optimizedResume": data["optimizedResume"], "changes": data.get("changes", [])}


class PrepGuideHandler(PromptTaskHandler):
    task_type = TaskType.PREP_GUIDE
    required_fields = ("job_title", "company")
    required_response_keys = ("sections",)
    working_stage = "Researching company..."
    max_output_tokens = 8000
    system_instruction = (
        "You are an expert interview coach. Build an interview preparation guide for the role. "
        "Return a JSON object with 'sections' (array of {title, content})."
    )

    def build_user_content(self, payload: dict[str, Any]) -> str:
        parts = [f"ROLE: {payload['job_title']} at {payload['company']}"]
        if payload.get("job_description"):
            parts.append(f"JOB DESCRIPTION:\n{payload['job_description']}")
        if payload.get("resume"):
            parts.append(f"CANDIDATE RESUME:\n{_dump(payload['resume'])}")
        return "\n\n".join(parts)


class CoverLetterHandler(PromptTaskHandler):
    task_type = TaskType.COVER_LETTER
    required_fields = ("resume", "job")
    required_response_keys = ("coverLetter",)
    working_stage = "Writing cover letter..."
    system_instruction = (
        "You are an expert career writer. Write a tailored cover letter. "
        "Return a JSON object with 'coverLetter' (string)."
    )

    def build_user_content(self, payload: dict[str, Any]) -> str:
        return f"RESUME:\n{_dump(payload['resume'])}\n\nTARGET JOB:\n{_dump(payload['job'])}"


class TrainingSlideshowHandler(PromptTaskHandler):
    task_type = TaskType.TRAINING_SLIDESHOW
    required_fields = ("skill", "position", "company")
    required_response_keys = ("slides",)
    working_stage = "Building training slides..."
    system_instruction = "You are an expert technical trainer. Return a JSON object with 'slides'."

    def build_user_content(self, payload: dict[str, Any]) -> str:
        return (
            f"Create a 10-15 slide technical training for {payload['skill']} "
            f"for the {payload['position']} role at {payload['company']}."
        )

    def shape_result(self, data: dict[str, Any]) -> dict[str, Any]:
        slides = data["slides"]
        if not isinstance(slides, list):
            raise UpstreamProviderError("slides must be a list")
        return {"slides": slides, "total_slides": len(slides)}



class RecommendationHandler(PromptTaskHandler):
    """
    Upskilling path and alternative roles for the gaps found by an analysis.

    The two completions are independent, so they run concurrently; either
    one failing fails the task.
    """

    task_type = TaskType.RECOMMENDATION
    required_fields = ("resume", "job", "gaps")
    working_stage = "Building recommendations..."

    def upskill_request(self, payload: dict[str, Any]) -> CompletionRequest:
        return CompletionRequest(
            system_instruction=(
                "You are a career advisor. Build a learning path that closes the skill gaps. "
                "Return a JSON object with 'steps' (array) and 'totalDuration'."
            ),
            user_content=(
                f"SKILL GAPS:\n{_dump(payload['gaps'])}\n\n"
                f"CANDIDATE RESUME:\n{_dump(payload['resume'])}"
            ),
        )

    def alternative_jobs_request(self, payload: dict[str, Any]) -> CompletionRequest:
        job = payload["job"]
        title = job.get("title") if isinstance(job, dict) else None
        return CompletionRequest(
            system_instruction=(
                "You are a career advisor. Suggest alternative roles the candidate already fits. "
                "Return a JSON object with 'alternatives' (array)."
            ),
            user_content=(
                f"TARGET ROLE: {title or _dump(job)}\n\n"
                f"CANDIDATE RESUME:\n{_dump(payload['resume'])}"
            ),
        )

    async def execute(self, payload: dict[str, Any], progress: ProgressCallback) -> HandlerResult:
        self.validate(payload)
        await progress(10, "Preparing request...")
        await progress(30, self.working_stage)
        upskill, jobs = await asyncio.gather(
            self.gateway.complete(self.upskill_request(payload)),
            self.gateway.complete(self.alternative_jobs_request(payload)),
        )

        alternatives = (jobs.data or {}).get("alternatives", [])
        if not isinstance(alternatives, list):
            raise UpstreamProviderError(f"{jobs.provider} alternatives must be a list")

        await progress(90, "Finalizing...")
        return HandlerResult(
            content={"upskillPath": upskill.data or {}, "alternativeJobs": alternatives},
            result_id=payload.get("target_id"),
        )


HANDLER_CLASSES: tuple[type[PromptTaskHandler], ...] = (
    AnalyzeHandler,
    OptimizeHandler,
    AddSkillHandler,
    PrepGuideHandler,
    CoverLetterHandler,
    TrainingSlideshowHandler,
    RecommendationHandler,
)


def build_handler_registry(gateway: AIProviderGateway) -> dict[TaskType, TaskHandler]:
    """One handler instance per task type, all sharing the gateway."""
    return {cls.task_type: cls(gateway) for cls in HANDLER_CLASSES}
