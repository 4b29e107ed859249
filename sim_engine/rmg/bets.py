"""
FAIRPLAY — Bet Specifications

Tagged bet variants, one per game. The `game` field is the discriminator,
so a raw JSON body parses straight into the right model:

    parse_bet_spec({"game": "roulette", "bet_type": "red"})  -> RouletteBet
    parse_bet_spec({"game": "dice", "target": 49.5})         -> DiceBet
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator

from tools.fair_errors import InvalidArgument

ROULETTE_POCKETS = 13        # mini wheel: 0 green, 1..12 alternating red/black
BALLOON_MAX_RISK = 95


class GameType(str, Enum):
    DICE = "dice"
    ROULETTE = "roulette"
    SLOTS = "slots"
    PLINKO = "plinko"
    BALLOON = "balloon"


class RouletteBetType(str, Enum):
    RED = "red"
    BLACK = "black"
    GREEN = "green"
    EVEN = "even"
    ODD = "odd"
    LOW = "low"          # 1-6
    HIGH = "high"        # 7-12
    NUMBER = "number"    # straight-up on one pocket


class DiceBet(BaseModel):
    """Roll-under: win when outcome < target."""
    game: Literal["dice"] = "dice"
    target: float = Field(gt=0, lt=100)


class RouletteBet(BaseModel):
    game: Literal["roulette"] = "roulette"
    bet_type: RouletteBetType
    number: Optional[int] = Field(default=None, ge=0, le=ROULETTE_POCKETS - 1)

    @model_validator(mode="after")
    def _number_only_for_straight(self):
        if self.bet_type == RouletteBetType.NUMBER and self.number is None:
            raise ValueError("A straight bet needs a number between 0 and 12")
        if self.bet_type != RouletteBetType.NUMBER and self.number is not None:
            raise ValueError("Only straight bets take a number")
        return self


class SlotsBet(BaseModel):
    game: Literal["slots"] = "slots"


class PlinkoBet(BaseModel):
    game: Literal["plinko"] = "plinko"


class BalloonBet(BaseModel):
    """risk is the pop chance in percent; the balloon survives when outcome >= risk."""
    game: Literal["balloon"] = "balloon"
    risk: int = Field(ge=1, le=BALLOON_MAX_RISK)


BetSpec = Annotated[
    Union[DiceBet, RouletteBet, SlotsBet, PlinkoBet, BalloonBet],
    Field(discriminator="game"),
]

_bet_spec_adapter = TypeAdapter(BetSpec)


def parse_bet_spec(data) -> BaseModel:
    """Validate a dict (or an existing model) into a BetSpec variant."""
    if isinstance(data, (DiceBet, RouletteBet, SlotsBet, PlinkoBet, BalloonBet)):
        return data
    try:
        return _bet_spec_adapter.validate_python(data)
    except ValidationError as e:
        first = e.errors()[0]
        where = ".".join(str(p) for p in first.get("loc", ()) if p)
        msg = first.get("msg", "invalid bet")
        raise InvalidArgument(f"Invalid bet: {where + ': ' if where else ''}{msg}")
