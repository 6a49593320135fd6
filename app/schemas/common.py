"""Shared schema helpers."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model exchanging camelCase JSON with the mobile clients."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class OkResult(CamelModel):
    ok: bool = True


class CountResult(CamelModel):
    count: int
