"""Models for glucose readings and carb/insulin events."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

GLUCOSE_MIN_MGDL = 20
GLUCOSE_MAX_MGDL = 600


class ReadingSource(str, Enum):
    """Origin tags found in the readings table."""

    MANUAL = "manual"
    DEXCOM_API = "dexcom_api"
    DEXCOM_SANDBOX = "dexcom_sandbox"
    MOCK_SEED = "mock_seed"
    MOCK_EVENTS = "mock_events"
    DEMO_MANUAL = "demo_manual"


class _EditableFields(BaseModel):
    glucose_mgdl: Optional[float] = Field(None, description="Blood glucose value in mg/dL")
    notes: Optional[str] = Field(None, description="Free text notes")
    meal_tag: Optional[str] = Field(None, description="Optional meal tag")
    carbs_grams: Optional[float] = Field(None, description="Carbohydrates in grams", ge=0)
    insulin_units: Optional[float] = Field(None, description="Insulin dose in units", ge=0)

    @field_validator("glucose_mgdl")
    @classmethod
    def validate_glucose_range(cls, value: Optional[float]) -> Optional[float]:
        """Validate that the glucose value is within a physiologically plausible range."""
        if value is None:
            return value
        if value < GLUCOSE_MIN_MGDL or value > GLUCOSE_MAX_MGDL:
            raise ValueError(
                f"Glucose value {value} is outside physiological range "
                f"({GLUCOSE_MIN_MGDL}-{GLUCOSE_MAX_MGDL} mg/dL)"
            )
        return value

    @model_validator(mode="after")
    def require_a_measurement(self):
        if self.glucose_mgdl is None and self.carbs_grams is None and self.insulin_units is None:
            raise ValueError("At least one of glucose_mgdl, carbs_grams or insulin_units is required")
        return self


class ReadingCreate(_EditableFields):
    """Body of a manual reading/event submission."""

    measured_at: Optional[datetime] = Field(None, description="Measurement time; defaults to now")
    source: str = Field(ReadingSource.MANUAL.value, description="Origin tag of the row")

    @field_validator("measured_at")
    @classmethod
    def ensure_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def resolved_measured_at(self) -> datetime:
        return self.measured_at or datetime.now(timezone.utc)


class ReadingUpdate(_EditableFields):
    """Body of a reading replacement; every editable field is overwritten."""


class Reading(BaseModel):
    """A stored row of the readings table."""

    id: int
    glucose_mgdl: Optional[float] = None
    measured_at: datetime
    source: str
    external_id: Optional[str] = None
    notes: Optional[str] = None
    meal_tag: Optional[str] = None
    carbs_grams: Optional[float] = None
    insulin_units: Optional[float] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Reading":
        """Create a Reading from a database row mapping."""
        data = dict(row)
        for field in ("glucose_mgdl", "carbs_grams", "insulin_units"):
            if data.get(field) is not None:
                data[field] = float(data[field])
        return cls(**data)
