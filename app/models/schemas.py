from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class ExperimentStatusEnum(str, Enum):
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


class ExperimentTypeEnum(str, Enum):
    PRODUCT = "product"
    CATEGORY = "category"
    CHECKOUT = "checkout"
    HOMEPAGE = "homepage"
    OTHER = "other"


class AudienceTypeEnum(str, Enum):
    ALL = "all"
    NEW_USERS = "newUsers"
    RETURNING_USERS = "returningUsers"
    SPECIFIC_USERS = "specificUsers"


class PrimaryGoalEnum(str, Enum):
    CONVERSION = "conversion"
    REVENUE = "revenue"
    ENGAGEMENT = "engagement"
    RETENTION = "retention"
    OTHER = "other"


class Variant(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    traffic_allocation: float = Field(..., ge=0, le=100, description="Share of new users (0-100)")
    config: Dict[str, Any] = Field(default_factory=dict, description="Opaque variant payload")


class TargetAudience(BaseModel):
    """Informational only; audience filtering is left to the caller."""

    type: AudienceTypeEnum = AudienceTypeEnum.ALL
    user_ids: List[str] = Field(default_factory=list)


class Goals(BaseModel):
    primary: PrimaryGoalEnum = PrimaryGoalEnum.CONVERSION
    secondary: List[PrimaryGoalEnum] = Field(default_factory=list)


class CreateExperimentRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    type: ExperimentTypeEnum = ExperimentTypeEnum.OTHER
    variants: List[Variant]
    target_audience: TargetAudience = Field(default_factory=TargetAudience)
    goals: Goals = Field(default_factory=Goals)


class UpdateExperimentRequest(BaseModel):
    """
    Partial update. Lifecycle-owned fields (status, dates, results, winner)
    are accepted for compatibility but ignored by the service.
    """

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    type: Optional[ExperimentTypeEnum] = None
    variants: Optional[List[Variant]] = None
    target_audience: Optional[TargetAudience] = None
    goals: Optional[Goals] = None
    status: Optional[ExperimentStatusEnum] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    results: Optional[Dict[str, Any]] = None
    winner: Optional[str] = None


class CompleteExperimentRequest(BaseModel):
    winner: Optional[str] = Field(None, description="Declared variant to record as the winner")


class ExperimentResults(BaseModel):
    impressions: Dict[str, int] = Field(default_factory=dict)
    conversions: Dict[str, int] = Field(default_factory=dict)
    revenue: Dict[str, float] = Field(default_factory=dict)
    engagements: Dict[str, int] = Field(default_factory=dict)


class ExperimentResponse(BaseModel):
    id: str
    name: str
    description: Optional[str]
    type: ExperimentTypeEnum
    status: ExperimentStatusEnum
    variants: List[Variant]
    target_audience: TargetAudience
    goals: Goals
    results: ExperimentResults
    winner: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ExperimentListResponse(BaseModel):
    experiments: List[ExperimentResponse]
    total: int


class AssignmentResponse(BaseModel):
    id: str
    user_id: str
    experiment_id: str
    variant: str
    impressions: int = 0
    conversions: int = 0
    revenue: float = 0.0
    engagements: int = 0
    last_activity: Optional[datetime] = None
    created_at: Optional[datetime] = None
    variant_details: Optional[Variant] = None

    class Config:
        from_attributes = True


class ExperimentRef(BaseModel):
    id: str
    name: str
    type: ExperimentTypeEnum


class UserExperimentAssignment(BaseModel):
    experiment: ExperimentRef
    variant: str
    variant_details: Optional[Variant] = None


class ImpressionEvent(BaseModel):
    event_type: Literal["impression"]


class ConversionEvent(BaseModel):
    event_type: Literal["conversion"]


class RevenueEvent(BaseModel):
    event_type: Literal["revenue"]
    amount: float = Field(0.0, ge=0, description="Revenue to add to the user's total")


class EngagementEvent(BaseModel):
    event_type: Literal["engagement"]


TrackEvent = Annotated[
    Union[ImpressionEvent, ConversionEvent, RevenueEvent, EngagementEvent],
    Field(discriminator="event_type"),
]


class TrackEventResponse(BaseModel):
    tracked: bool
    assignment: Optional[AssignmentResponse] = None


class VariantResultResponse(BaseModel):
    variant: str
    users: int
    impressions: int
    conversions: int
    revenue: float
    engagements: int
    conversion_rate: float
    average_revenue: float


class SignificanceResponse(BaseModel):
    is_significant: bool
    confidence_level: int
    winner: Optional[str] = None
    control: Optional[str] = None
    variation: Optional[str] = None
    improvement: Optional[float] = None
    z_score: Optional[float] = None


class ExperimentResultsResponse(BaseModel):
    experiment: ExperimentResponse
    results_by_variant: List[VariantResultResponse]
    significance: SignificanceResponse
    winner: Optional[str] = None
