"""
Identity-provider profile variants accepted by reconciliation.

Each variant is one fallback tier: a full profile mirrors every field, a
partial profile carries only id and email, a minimal profile creates a bare
row. ``ExternalProfile`` is the tagged union over ``kind``.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class FullProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["full"] = "full"
    external_id: str = Field(min_length=1)
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: Optional[str] = None
    username: Optional[str] = None
    image_url: Optional[str] = None

    def downgrade(self) -> "PartialProfile":
        return PartialProfile(external_id=self.external_id, email=self.email)


class PartialProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["partial"] = "partial"
    external_id: str = Field(min_length=1)
    email: Optional[str] = None

    def downgrade(self) -> "MinimalProfile":
        return MinimalProfile(external_id=self.external_id, email=self.email)


class MinimalProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["minimal"] = "minimal"
    external_id: str = Field(min_length=1)
    email: Optional[str] = None


ExternalProfile = Annotated[
    Union[FullProfile, PartialProfile, MinimalProfile],
    Field(discriminator="kind"),
]
