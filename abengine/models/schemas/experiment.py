import json
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from abengine.core.errors import ConfigurationError


# --- Configuration (parsed experiments document) ---


class VariationConfig(BaseModel):
    """Configuration for a single variation of a test."""

    text: str = Field(
        "", description="Display payload; may contain {{event}} placeholders."
    )


class ExperimentConfig(BaseModel):
    """Configuration for one test and its variations, in display order."""

    description: str = ""
    variations: Dict[str, VariationConfig] = Field(default_factory=dict)


class ExperimentsConfig(BaseModel):
    """The whole experiments document: test id -> test configuration."""

    tests: Dict[str, ExperimentConfig] = Field(default_factory=dict)

    @classmethod
    def from_file(cls, path: str | Path) -> "ExperimentsConfig":
        try:
            raw = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read experiments file {path}: {e}") from e

        try:
            return cls.model_validate_json(raw)
        except (ValidationError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Invalid experiments file {path}: {e}") from e


# --- Merged view (configuration + persisted counters) ---


class Variation(BaseModel):
    variation_id: str
    test_id: str
    text: str = ""
    pageviews: int = 0
    wins: int = 0
    rank: float = 0.0

    @property
    def success_rate(self) -> float:
        return self.wins / self.pageviews if self.pageviews else 0.0


class Experiment(BaseModel):
    """A test with its variations and aggregate pageviews."""

    test_id: str
    description: str = ""
    pageviews: int = 0
    variations: List[Variation] = Field(default_factory=list)

    def get_variation(self, variation_id: str) -> Optional[Variation]:
        for variation in self.variations:
            if variation.variation_id == variation_id:
                return variation
        return None


# --- Reporting ---


class VariationResultModel(BaseModel):
    variation_id: str
    pageviews: int
    wins: int
    success_rate: float
    rank: float


class ExperimentResultModel(BaseModel):
    test_id: str
    description: str
    pageviews: int
    variations: List[VariationResultModel] = Field(
        ..., description="Ordered by rank score, highest first."
    )


# --- Page render ---


class RenderedVariationModel(BaseModel):
    test_id: str
    variation_id: str
    text: str = Field(..., description="Variation text with event placeholders bound.")
    sticky: bool = Field(..., description="True if taken from an existing assignment.")
    events: Dict[str, str] = Field(
        default_factory=dict,
        description="Signed attributes per requested event type, for elements outside the text.",
    )


class RenderResponseModel(BaseModel):
    token: str
    disabled: bool = Field(False, description="Recording disabled (e.g. bot traffic).")
    variations: List[RenderedVariationModel] = Field(default_factory=list)
    pageviews: List[Dict[str, str]] = Field(
        default_factory=list, description="Signed pageview payload for active tests."
    )
    pageview_code: Optional[str] = None
