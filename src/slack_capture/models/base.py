"""Shared pydantic base for models that cross a context or disk boundary."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base model serialized with camelCase keys.

    Python code uses snake_case attributes; JSON on the bus and on disk uses
    camelCase (``senderName``, ``isInferredSender``). Both spellings are
    accepted on input.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        """Return a JSON-safe dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)
