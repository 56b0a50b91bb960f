"""Base model shared by definitions, records and job payloads."""

from pydantic import BaseModel, ConfigDict


class Model(BaseModel):
    """Immutable model; unknown keys such as derived stats are ignored on load."""

    model_config = ConfigDict(frozen=True, extra="ignore")
