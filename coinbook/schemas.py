"""
Pydantic schemas for caller input

These models validate the shape of a request at the boundary. The engines
re-check every business rule on their own.
"""

from typing import Optional
from pydantic import BaseModel, Field, model_validator

from .registry import COIN_NAME_MAX_LENGTH, COIN_NAME_MIN_LENGTH, COIN_SYMBOL_MAX_LENGTH
from .roles import CoinAction, ROLE_NAME_MAX_LENGTH
from .transfers import MESSAGE_MAX_LENGTH


COIN_NAME_REGEX = r"^[A-Za-z0-9 ]+$"


# Transaction schemas
class SubmitTransaction(BaseModel):
    target: str = Field(..., description="Account id of the other party")
    coin: str = Field(..., min_length=1, description="External id of the coin")
    amount: int = Field(..., gt=0)
    message: str = Field("", max_length=MESSAGE_MAX_LENGTH)
    charging: bool = Field(False, description="Request a payment from target instead of paying them")


class RequestAction(BaseModel):
    request_id: str


# Coin schemas
class CreateCoin(BaseModel):
    name: str = Field(..., min_length=COIN_NAME_MIN_LENGTH, max_length=COIN_NAME_MAX_LENGTH,
                      pattern=COIN_NAME_REGEX)
    symbol: str = Field(..., min_length=1, max_length=COIN_SYMBOL_MAX_LENGTH)


class UpdateCoin(BaseModel):
    name: Optional[str] = Field(None, min_length=COIN_NAME_MIN_LENGTH, max_length=COIN_NAME_MAX_LENGTH,
                                pattern=COIN_NAME_REGEX)
    symbol: Optional[str] = Field(None, min_length=1, max_length=COIN_SYMBOL_MAX_LENGTH)

    @model_validator(mode="after")
    def check_not_empty(self) -> 'UpdateCoin':
        if self.name is None and self.symbol is None:
            raise ValueError("Give a name or a symbol to update")
        return self


# Role schemas
class AddRole(BaseModel):
    name: str = Field(..., min_length=1, max_length=ROLE_NAME_MAX_LENGTH)
    level: int = Field(..., ge=0, description="Lower is more privileged; 0 is Owner")


class AssignRole(BaseModel):
    target: str = Field(..., description="Account id of the user receiving the role")
    role_id: int = Field(..., ge=1)


class SetPermission(BaseModel):
    action: CoinAction
    level: int = Field(..., ge=0)
