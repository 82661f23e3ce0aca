from decimal import Decimal
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from matchstake.config import settings
from matchstake.helpers import whole_units


class GatewayDepositRequest(BaseModel):
    originatorRequestId: str
    destinationAccount: str
    sourceAccount: str
    amount: int
    channel: str
    product: str
    event: str = ""
    narration: str
    callbackUrl: str

    @classmethod
    def for_stake(cls, request_id: str, phone: str, amount: Decimal, challenge_id: int) -> "GatewayDepositRequest":
        return cls(
            originatorRequestId=request_id,
            destinationAccount=settings.gateway_account,
            sourceAccount=phone,
            amount=whole_units(amount),
            channel=settings.gateway_channel,
            product=settings.gateway_deposit_product,
            narration=f"Match stake deposit - challenge {challenge_id}",
            callbackUrl=str(settings.gateway_callback_url),
        )


class GatewayWithdrawRequest(BaseModel):
    originatorRequestId: str
    sourceAccount: str
    destinationAccount: str
    amount: int
    channel: str
    channelType: str = "MOBILE"
    product: str
    narration: str
    callbackUrl: str

    @classmethod
    def for_payout(
        cls, request_id: str, phone: str, amount: Decimal, challenge_id: int, is_refund: bool
    ) -> "GatewayWithdrawRequest":
        purpose = "refund" if is_refund else "winnings"
        return cls(
            originatorRequestId=request_id,
            sourceAccount=settings.gateway_account,
            destinationAccount=phone,
            amount=whole_units(amount),
            channel=settings.gateway_channel,
            product=settings.gateway_withdraw_product,
            narration=f"Match {purpose} - challenge {challenge_id}",
            callbackUrl=str(settings.gateway_callback_url),
        )


class ChessComSide(BaseModel):
    model_config = ConfigDict(extra="ignore")

    username: str
    result: str
    rating: Optional[int] = None


class ChessComGame(BaseModel):
    model_config = ConfigDict(extra="ignore")

    url: Optional[str] = None
    end_time: int = 0
    time_control: Optional[str] = None
    rules: Optional[str] = None
    white: ChessComSide
    black: ChessComSide

    def involves(self, first: str, second: str) -> bool:
        players = {self.white.username.lower(), self.black.username.lower()}
        return players == {first.lower(), second.lower()}


class GatewayTokenResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(..., validation_alias=AliasChoices("access_token", "accessToken", "token"))
