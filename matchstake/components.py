from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from matchstake.auto_refund import AutoRefunder
from matchstake.clients.chess_api import ChessApiClient, RateLimitWindow
from matchstake.clients.payment_gateway import PaymentGatewayClient
from matchstake.database import SessionLocal
from matchstake.notifications import NotificationHub
from matchstake.payments import PaymentService
from matchstake.poller import MatchResultPoller
from matchstake.settlement import SettlementService
from matchstake.sweeper import PaymentTimeoutSweeper
from matchstake.webhooks import CallbackReconciler


@dataclass
class Components:
    cooldown: RateLimitWindow
    chess_api: ChessApiClient
    gateway: PaymentGatewayClient
    notifier: NotificationHub
    payments: PaymentService
    settlement: SettlementService
    refunder: AutoRefunder
    poller: MatchResultPoller
    reconciler: CallbackReconciler
    sweeper: PaymentTimeoutSweeper

    async def close(self) -> None:
        self.poller.stop_all()
        await self.sweeper.stop()
        await self.chess_api.close()
        await self.gateway.close()


def build_components(
    session_factory: Callable[[], Session] = SessionLocal,
    chess_api: Optional[ChessApiClient] = None,
    gateway: Optional[PaymentGatewayClient] = None,
    notifier: Optional[NotificationHub] = None,
) -> Components:
    """Wire one instance of every service; the chess API client and the poller share the cooldown."""
    chess_api = chess_api or ChessApiClient(cooldown=RateLimitWindow())
    gateway = gateway or PaymentGatewayClient()
    notifier = notifier or NotificationHub()
    payments = PaymentService(gateway)
    settlement = SettlementService(payments, notifier)
    refunder = AutoRefunder(payments, notifier)
    return Components(
        cooldown=chess_api.cooldown,
        chess_api=chess_api,
        gateway=gateway,
        notifier=notifier,
        payments=payments,
        settlement=settlement,
        refunder=refunder,
        poller=MatchResultPoller(chess_api, chess_api.cooldown, settlement, refunder, session_factory),
        reconciler=CallbackReconciler(notifier),
        sweeper=PaymentTimeoutSweeper(payments, notifier, session_factory),
    )
