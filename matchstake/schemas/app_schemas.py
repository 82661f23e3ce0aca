from decimal import Decimal
from typing import Optional, Union

from pydantic import BaseModel


class DepositRequest(BaseModel):
    phoneNumber: str
    amount: Union[Decimal, str]
    userId: Union[int, str]
    challengeId: Union[int, str]


class WithdrawalRequest(BaseModel):
    phoneNumber: str
    amount: Union[Decimal, str]
    userId: Union[int, str]
    challengeId: Union[int, str]
    isRefund: bool = False


class PaymentResponse(BaseModel):
    success: bool
    message: str
    requestId: Optional[str] = None
    transactionId: Optional[str] = None
    status: Optional[str] = None
    creditedToBalance: bool = False
    error: Optional[str] = None


class StartMatchRequest(BaseModel):
    challengeId: Union[int, str]


class MatchResponse(BaseModel):
    matchId: int
    challengeId: int
    created: bool
    challengerUsername: str
    opponentUsername: str
    platform: str
    resultChecked: bool

