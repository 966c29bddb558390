from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from src.api.schemas.common import Severity
from src.api.schemas.metrics import AggregationFunction


AlertOperator = Literal[">", ">=", "<", "<=", "==", "!="]
AlertStatus = Literal["active", "resolved"]
EvaluationOutcome = Literal["created", "updated", "resolved", "unchanged", "skipped"]

# Rules reduce with the closed set only; LAST is a query-view convenience.
RuleFunction = Literal["MIN", "MAX", "SUM", "AVG", "P95", "COUNT"]


class AlertRuleBase(BaseModel):
    """Common fields for an alert rule."""

    name: str = Field(..., description="Human-friendly rule name.")
    service_id: str = Field(..., min_length=1, description="Service whose metrics the rule watches.")
    metric_type: str = Field(..., min_length=1, description="Metric key compared by the rule.")
    aggregation_function: RuleFunction = Field(..., description="Reducer applied over the lookback window.")
    operator: AlertOperator = Field(..., description="Comparison applied as `value <operator> threshold`.")
    threshold: float = Field(..., description="Threshold compared against the aggregate.")
    severity: Severity = Field(Severity.warning, description="Presentation severity; does not alter evaluation.")
    is_active: bool = Field(True, description="Whether the rule is evaluated.")
    window_sec: int = Field(
        ...,
        description="Lookback window (seconds) used for evaluation.",
        ge=1,
        le=7 * 24 * 3600,
    )


class AlertRuleCreate(AlertRuleBase):
    """Request model for creating (or fully replacing) a rule."""


class AlertRuleUpdate(BaseModel):
    """Request model for partial update (PATCH)."""

    name: Optional[str] = Field(default=None, description="Human-friendly rule name.")
    service_id: Optional[str] = Field(default=None, min_length=1)
    metric_type: Optional[str] = Field(default=None, min_length=1)
    aggregation_function: Optional[RuleFunction] = None
    operator: Optional[AlertOperator] = None
    threshold: Optional[float] = None
    severity: Optional[Severity] = None
    is_active: Optional[bool] = None
    window_sec: Optional[int] = Field(default=None, ge=1, le=7 * 24 * 3600)


class AlertRuleOut(AlertRuleBase):
    """Response model for an alert rule."""

    id: str = Field(..., description="Rule id.")
    created_at: datetime = Field(..., description="UTC timestamp when the rule was created.")
    updated_at: datetime = Field(..., description="UTC timestamp when the rule was last updated.")

    @property
    def function(self) -> AggregationFunction:
        return AggregationFunction(self.aggregation_function)


class AlertRuleListResponse(BaseModel):
    """Envelope for listing rules."""

    items: List[AlertRuleOut] = Field(..., description="List of alert rules.")
    total: int = Field(..., ge=0, description="Total count of rules returned.")


class AlertOut(BaseModel):
    """An alert created and resolved by the evaluator."""

    id: str = Field(..., description="Alert id.")
    rule_id: str = Field(..., description="Rule that raised the alert.")
    status: AlertStatus = Field(..., description="active | resolved")
    current_value: float = Field(..., description="Aggregate value at the last evaluation that held the condition.")
    triggered_at: datetime = Field(..., description="UTC timestamp when the alert was created.")
    resolved_at: Optional[datetime] = Field(default=None, description="UTC timestamp when the alert resolved.")
    updated_at: datetime = Field(..., description="UTC timestamp of the last evaluation touching this alert.")
    message: str = Field(..., description="Human-readable alert message.")

    service_id: str = Field(..., description="Service the rule watches.")
    metric_type: str = Field(..., description="Metric key of the rule.")
    severity: Severity = Field(..., description="Rule severity at trigger time.")
    threshold: float = Field(..., description="Rule threshold at trigger time.")


class AlertListResponse(BaseModel):
    """Envelope for listing alerts (critical first, newest first)."""

    items: List[AlertOut] = Field(..., description="List of alerts.")
    total: int = Field(..., ge=0, description="Total count returned.")


class EvaluationResult(BaseModel):
    """Outcome of evaluating one rule."""

    rule_id: str
    outcome: EvaluationOutcome
    value: Optional[float] = Field(default=None, description="Aggregate value (null when the rule was skipped).")
    condition_met: Optional[bool] = None
    sample_count: int = Field(0, ge=0)
    alert: Optional[AlertOut] = None
