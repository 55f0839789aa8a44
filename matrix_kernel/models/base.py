"""Shared pydantic base for models persisted in the camelCase wire format."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """
    Base model whose JSON form uses camelCase keys (ruleId, targetCategory, ...).

    Python code reads and writes snake_case attributes; dumps that leave the
    process (store files, API responses) use ``by_alias=True``.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> dict:
        """Serialize to the persisted/JSON wire format."""
        return self.model_dump(mode="json", by_alias=True)
