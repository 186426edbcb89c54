"""Pydantic base schema utilities for agent core models."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class BaseSchema(BaseModel):
    """
    Base Pydantic model for all domain schemas.

    Configures common Pydantic behaviors:
    - ``populate_by_name=True``: Allow initialization by alias or field name.
    - ``extra="forbid"``: Prevent unknown fields from slipping into the model, ensuring strict validation.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        extra="forbid",
    )


class DocumentSchema(BaseModel):
    """
    Base model for persisted documents.

    Persisted documents round-trip through storage as camelCase JSON and may carry
    keys written by newer code, so unknown fields are kept rather than rejected.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        extra="allow",
    )

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
