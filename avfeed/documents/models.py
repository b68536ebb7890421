"""
Document model stored in the feed container.
"""

from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field


class Document(BaseModel):
    """Synthetic document keyed (and partitioned) by its own id."""

    # Store system properties (_rid, _ts, _etag, ...) ride along on reads
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(..., min_length=1, description="Unique document identifier")
    value: float = Field(..., description="Numeric payload")
    ttl: Optional[int] = Field(None, description="Time-to-live in seconds")

    def to_store(self) -> Dict[str, Any]:
        """Serialize for an upsert, leaving ttl out when unset."""
        body: Dict[str, Any] = {"id": self.id, "value": self.value}
        if self.ttl is not None:
            body["ttl"] = self.ttl
        return body

    @property
    def display_value(self) -> str:
        """Value without a trailing .0 for integral payloads."""
        if float(self.value).is_integer():
            return str(int(self.value))
        return str(self.value)
