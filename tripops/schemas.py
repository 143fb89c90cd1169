from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

class CheckpointRequest(BaseModel):
    """Body of a checkpoint submission."""
    model_config = ConfigDict(populate_by_name=True)

    event_type: Optional[str] = Field(None, alias="eventType")
    stop_id: Optional[str] = Field(None, alias="stopId")
    stop_label: Optional[str] = Field(None, alias="stopLabel")
    odometer_miles: Optional[float] = Field(None, alias="odometerMiles")
    lat: Optional[float] = None
    lon: Optional[float] = None
    notes: Optional[str] = None

    @field_validator("odometer_miles", "lat", "lon", mode="before")
    @classmethod
    def drop_unparseable_numbers(cls, value):
        # Auxiliary fields never fail the submission
        if value is None or isinstance(value, bool):
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @field_validator("stop_id", mode="before")
    @classmethod
    def stringify_stop_id(cls, value):
        return None if value is None else str(value)
