"""Pydantic models for grading results."""

from typing import Any, Dict, List

from pydantic import BaseModel, Field, field_validator


class DeductionDetail(BaseModel):
    """A named penalty subtracted from a perfect score."""
    reason: str = Field(default="", description="Why points were taken off")
    deduction_percentage: float = Field(default=0.0, description="Percentage points deducted")

    @field_validator("reason", mode="before")
    @classmethod
    def _coerce_reason(cls, value):
        return "" if value is None else str(value)

    @field_validator("deduction_percentage", mode="before")
    @classmethod
    def _coerce_percentage(cls, value):
        # Non-numeric deductions count as 0
        if isinstance(value, bool):
            return 0.0
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, str):
            try:
                return float(value.strip().rstrip('%'))
            except ValueError:
                return 0.0
        return 0.0


class FeedbackContent(BaseModel):
    good_point: str = Field(description="What the student did well")
    improvement_advice: str = Field(description="Concrete advice for improvement")
    rewrite_example: str = Field(description="An improved version of the answer")


class GradingResult(BaseModel):
    """Final, reconciled result for one label."""
    recognized_text: str = Field(description="Verbatim transcription of the student's answer")
    score: int = Field(ge=0, le=100, description="Reconciled score, a multiple of 10")
    deduction_details: List[DeductionDetail] = Field(default_factory=list)
    mandatory_checks: Dict[str, Any] = Field(default_factory=dict,
                                             description="Programmatic register and repetition checks")
    feedback_content: FeedbackContent

    @field_validator("score")
    @classmethod
    def _multiple_of_ten(cls, value):
        if value % 10 != 0:
            raise ValueError("score must be a multiple of 10")
        return value

    def to_dict(self) -> dict:
        return self.model_dump()
