from pydantic import BaseModel, Field


class AssignmentModel(BaseModel):
    """The variation a visitor sees for one test."""

    test_id: str
    variation_id: str
    sticky: bool = Field(
        False, description="True if reused from an existing binding rather than newly selected."
    )
