"""Validated records of the effect an item applied during a heist."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


def _to_camel(value: str) -> str:
    parts = value.split("_")
    return parts[0] + "".join(word.capitalize() for word in parts[1:])


class _EffectModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=_to_camel, frozen=True)

    def as_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class BoostEffect(_EffectModel):
    """Attacker steal percentage raised by ``boost`` percent."""

    kind: Literal["boost"] = "boost"
    boost: float = Field(gt=0)
    new_percentage: float = Field(gt=0)


class BonusEffect(_EffectModel):
    """Flat points added after any percentage boost."""

    kind: Literal["bonus"] = "bonus"
    bonus: int = Field(gt=0)


class BlockEffect(_EffectModel):
    """Victim shield roll that stopped the heist."""

    kind: Literal["block"] = "block"
    blocked: bool = True
    block_chance: float = Field(gt=0)


class ReductionEffect(_EffectModel):
    """Victim shield that reduced the amount by ``reduction`` percent."""

    kind: Literal["reduction"] = "reduction"
    reduction: float = Field(gt=0)


ItemEffect = Annotated[
    Union[BoostEffect, BonusEffect, BlockEffect, ReductionEffect],
    Field(discriminator="kind"),
]

_effect_adapter: TypeAdapter[ItemEffect] = TypeAdapter(ItemEffect)


def parse_effect(payload: dict[str, Any]) -> BoostEffect | BonusEffect | BlockEffect | ReductionEffect:
    """Validate a stored ``effect_applied`` payload back into its variant."""

    return _effect_adapter.validate_python(payload)
