"""
Workflow Models — processing modes, step configs, executions.

Every ProcessingMode has exactly one config shape; StepConfig is a
discriminated union on `mode`, so a malformed workflow fails when the
WorkflowConfig is built, not halfway through an execution.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ProcessingMode(str, Enum):
    TRANSFORM = "transform"
    REMOVE_BACKGROUND = "remove_background"
    REMOVE_OBJECT = "remove_object"
    REPLACE_BACKGROUND = "replace_background"
    ENHANCE = "enhance"
    UPSCALE = "upscale"
    STYLE_TRANSFER = "style_transfer"
    VIRTUAL_TRY_ON = "virtual_try_on"
    PROFESSIONAL_HEADSHOTS = "professional_headshots"
    POP_FIGURE = "pop_figure"
    PIXEL_ART_GAMER = "pixel_art_gamer"
    GHIBLIFY = "ghiblify"


# ---------------------------------------------------------------------------
# Per-mode step configs
# ---------------------------------------------------------------------------

class _StepConfigBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    def params(self) -> dict:
        """Processor parameters without the discriminator."""
        return self.model_dump(exclude={"mode"}, exclude_none=True)


class TransformConfig(_StepConfigBase):
    mode: Literal["transform"] = "transform"
    prompt: str = Field(..., min_length=1)


class RemoveBackgroundConfig(_StepConfigBase):
    mode: Literal["remove_background"] = "remove_background"


class RemoveObjectConfig(_StepConfigBase):
    mode: Literal["remove_object"] = "remove_object"
    prompt: Optional[str] = None


class ReplaceBackgroundConfig(_StepConfigBase):
    mode: Literal["replace_background"] = "replace_background"
    background_image_uri: Optional[str] = None
    background_prompt: Optional[str] = None

    @model_validator(mode="after")
    def _needs_background(self):
        if not self.background_image_uri and not self.background_prompt:
            raise ValueError("replace_background needs background_image_uri or background_prompt")
        return self


class EnhanceConfig(_StepConfigBase):
    mode: Literal["enhance"] = "enhance"
    version: str = "v1.4"
    scale: int = Field(2, ge=1, le=4)


class UpscaleConfig(_StepConfigBase):
    mode: Literal["upscale"] = "upscale"
    outscale: int = Field(4, ge=1, le=8)
    face_enhance: bool = False


class StyleTransferConfig(_StepConfigBase):
    mode: Literal["style_transfer"] = "style_transfer"
    style_image_uri: Optional[str] = None
    style_strength: float = 0.7
    style_preset: Optional[str] = None
    style_description: Optional[str] = None

    @field_validator("style_strength")
    @classmethod
    def _clamp_strength(cls, v: float) -> float:
        return max(0.0, min(1.0, v))


class VirtualTryOnConfig(_StepConfigBase):
    mode: Literal["virtual_try_on"] = "virtual_try_on"
    clothing_items: List[str] = Field(..., min_length=1)
    fit_style: str = "natural"
    preserve_background: bool = True


class ProfessionalHeadshotsConfig(_StepConfigBase):
    mode: Literal["professional_headshots"] = "professional_headshots"
    headshot_style: str = "corporate"
    background_style: str = "neutral"
    lighting_style: str = "professional"
    background_image_uri: Optional[str] = None


class PopFigureConfig(_StepConfigBase):
    mode: Literal["pop_figure"] = "pop_figure"
    include_box: bool = True
    background_type: str = "studio"
    background_color: str = Field("#FFFFFF", pattern=r"^#[0-9A-Fa-f]{6}$")
    is_transparent: bool = False


class PixelArtGamerConfig(_StepConfigBase):
    mode: Literal["pixel_art_gamer"] = "pixel_art_gamer"
    bit_depth: Literal["8-bit", "16-bit"] = "16-bit"
    game_style: Literal["rpg", "platformer", "arcade", "fighter", "adventure", "indie"] = "rpg"
    background_style: str = "transparent"
    prompt: Optional[str] = None


class GhiblifyConfig(_StepConfigBase):
    mode: Literal["ghiblify"] = "ghiblify"
    prompt: Optional[str] = None


StepConfig = Annotated[
    Union[
        TransformConfig,
        RemoveBackgroundConfig,
        RemoveObjectConfig,
        ReplaceBackgroundConfig,
        EnhanceConfig,
        UpscaleConfig,
        StyleTransferConfig,
        VirtualTryOnConfig,
        ProfessionalHeadshotsConfig,
        PopFigureConfig,
        PixelArtGamerConfig,
        GhiblifyConfig,
    ],
    Field(discriminator="mode"),
]


# ---------------------------------------------------------------------------
# Workflow definition
# ---------------------------------------------------------------------------

class WorkflowStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    display_name: Optional[str] = None
    config: StepConfig
    estimated_cost: Decimal = Field(..., ge=0)

    @model_validator(mode="before")
    @classmethod
    def _default_cost(cls, data):
        # Cost falls back to the mode's catalog price
        if isinstance(data, dict) and data.get("estimated_cost") is None:
            config = data.get("config")
            mode = config.get("mode") if isinstance(config, dict) else getattr(config, "mode", None)
            if mode is not None:
                from photoledger.services.catalog import mode_cost

                data = {**data, "estimated_cost": mode_cost(ProcessingMode(mode))}
        return data

    @property
    def processing_mode(self) -> ProcessingMode:
        return ProcessingMode(self.config.mode)


class WorkflowConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    workflow_id: str = Field(..., min_length=1)
    name: str = ""
    description: Optional[str] = None
    steps: List[WorkflowStep] = Field(..., min_length=1)

    @field_validator("steps")
    @classmethod
    def _unique_step_ids(cls, steps: List[WorkflowStep]) -> List[WorkflowStep]:
        seen = set()
        for step in steps:
            if step.id in seen:
                raise ValueError(f"duplicate step id {step.id!r}")
            seen.add(step.id)
        return steps

    @property
    def total_estimated_cost(self) -> Decimal:
        return sum((s.estimated_cost for s in self.steps), Decimal("0"))


# ---------------------------------------------------------------------------
# Execution state
# ---------------------------------------------------------------------------

class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    STEP_FAILED = "step_failed"
    COMPLETE = "complete"
    ABORTED = "aborted"
    ABANDONED = "abandoned"  # save-partial
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    ExecutionStatus.COMPLETE,
    ExecutionStatus.ABORTED,
    ExecutionStatus.ABANDONED,
    ExecutionStatus.CANCELLED,
})


class AbortReason(str, Enum):
    INSUFFICIENT_CREDITS = "insufficient_credits"
    USER_ABORTED = "user_aborted"


class WorkflowStepResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_id: str
    step_index: int
    output_uri: Optional[str] = None
    success: bool
    processing_time_ms: int = 0
    credits_charged: Decimal = Decimal("0")
    error: Optional[str] = None
    completed_at: datetime


class WorkflowExecution(BaseModel):
    """Resumable execution state: index + accumulated results."""

    execution_id: str
    workflow: WorkflowConfig
    input_uri: str
    current_step_index: int = 0
    step_results: List[WorkflowStepResult] = Field(default_factory=list)
    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: datetime
    updated_at: datetime
    finished_at: Optional[datetime] = None
    abort_reason: Optional[AbortReason] = None
    cancel_requested: bool = False
    last_error: Optional[str] = None
    last_error_code: Optional[str] = None
    failure: Optional[Dict[str, Any]] = None  # error_registry.describe() of the last error
    final_output_uri: Optional[str] = None
    step_attempts: Dict[str, int] = Field(default_factory=dict)
    # Successful step whose spend may already be committed; settled on resume
    pending_result: Optional[WorkflowStepResult] = None
    pending_reservation_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def current_step(self) -> Optional[WorkflowStep]:
        if self.current_step_index >= len(self.workflow.steps):
            return None
        return self.workflow.steps[self.current_step_index]

    @property
    def last_successful_output(self) -> Optional[str]:
        for result in reversed(self.step_results):
            if result.success:
                return result.output_uri
        return None

    @property
    def current_input_uri(self) -> str:
        """Prior step's output, or the workflow input for step 0."""
        return self.last_successful_output or self.input_uri

    @property
    def credits_spent(self) -> Decimal:
        return sum((r.credits_charged for r in self.step_results if r.success), Decimal("0"))
