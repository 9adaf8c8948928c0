"""Base model shared by all persisted entities."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class StoredModel(BaseModel):
    """Entity persisted with camelCase keys, addressed with snake_case in code."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_store(self) -> dict:
        """Dump in the persisted (camelCase, JSON-safe) shape."""
        return self.model_dump(mode="json", by_alias=True)
