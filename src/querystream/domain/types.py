"""
Type aliases and shared model configuration for the QueryStream system.
"""

from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


# One result row: {column_name: value}
Row = Dict[str, Any]

# Result rows in driver order
Rows = List[Row]

# Payload of a stream event (camelCase keys)
EventPayload = Dict[str, Any]


class CamelModel(BaseModel):
    """
    Base model whose wire form uses camelCase keys.

    Python code uses snake_case attributes; `model_dump(by_alias=True)`
    produces the keys clients see (e.g. executionTimeMs).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
