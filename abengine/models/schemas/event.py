from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


# Fields are optional on purpose: a malformed submission is rejected by the
# authorizer as unauthorized rather than by request validation.


class PageviewSubmissionModel(BaseModel):
    """Pageview(s) reported by the page for the tests it rendered."""

    token: Optional[str] = None
    code: Optional[str] = None
    tests: Union[List[Dict[str, Any]], Dict[str, Any]] = Field(default_factory=list)

    def payload(self) -> List[Dict[str, Any]]:
        return self.tests if isinstance(self.tests, list) else [self.tests]


class EventSubmissionModel(BaseModel):
    """A success event ("win") for one test variation."""

    token: Optional[str] = None
    code: Optional[str] = None
    test_id: Optional[str] = None
    variation_id: Optional[str] = None
    event: Optional[str] = Field(None, description="e.g., 'click', 'submit'")

    def payload(self) -> Dict[str, Any]:
        return {
            "test_id": self.test_id,
            "variation_id": self.variation_id,
            "event": self.event,
        }


class RecordResultModel(BaseModel):
    recorded: bool
