import os
import sys
import tempfile
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Settings and the engine are read at import time, so the disposable database and the
# test token have to be in the environment before anything from matchstake is imported.
_DB_DIR = tempfile.mkdtemp(prefix="matchstake-tests-")
os.environ["DB_URL"] = f"sqlite:///{_DB_DIR}/test.db"
os.environ["BEARER_TOKEN"] = "testtoken"
os.environ["BACKGROUND_WORKERS_ENABLED"] = "false"

from matchstake.clients.payment_gateway import PaymentGatewayClient  # noqa: E402
from matchstake.config import settings  # noqa: E402
from matchstake.database import SessionLocal, engine  # noqa: E402
from matchstake.helpers import utcnow  # noqa: E402
from matchstake.models import models  # noqa: E402
from matchstake.notifications import NotificationHub  # noqa: E402
from matchstake.payments import PaymentService  # noqa: E402


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGatewayHttp:
    """Stands in for the gateway's HTTP endpoints by replacing AsyncClient.post."""

    def __init__(self):
        self.calls: list[dict] = []
        self.fail_status: dict[str, int] = {}
        self.gateway = PaymentGatewayClient(base_url="https://gateway.test")

    async def post(self, url, json=None, headers=None, **kwargs):
        self.calls.append({"url": url, "json": json, "headers": headers or {}})
        request = httpx.Request("POST", f"https://gateway.test{url}")
        if url == settings.gateway_auth_path:
            return httpx.Response(200, json={"access_token": "gateway-token"}, request=request)
        status = self.fail_status.get(url)
        if status:
            return httpx.Response(status, json={"message": "gateway unavailable"}, request=request)
        return httpx.Response(200, json={"transactionId": f"TX{len(self.calls)}"}, request=request)

    def transfers(self) -> list[dict]:
        return [call["json"] for call in self.calls if call["url"] != settings.gateway_auth_path]


@pytest.fixture
def db():
    models.Base.metadata.drop_all(bind=engine)
    models.Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_gateway(monkeypatch):
    fake = FakeGatewayHttp()
    monkeypatch.setattr(fake.gateway.client, "post", fake.post)
    return fake


@pytest.fixture
def notifier():
    return NotificationHub()


@pytest.fixture
def payment_service(fake_gateway):
    return PaymentService(fake_gateway.gateway)


def events(notifier: NotificationHub, name: str) -> list[dict]:
    return [entry for entry in notifier.history if entry["event"] == name]


def make_challenge(
    db,
    stake="50",
    status="deposits_complete",
    platform="chess.com",
    time_control="5+0",
    with_phones=True,
    accepted_minutes_ago=None,
):
    challenger = models.User(
        username="alice",
        phone="+254711111111",
        chess_com_username="AliceChess",
        lichess_username="alice_li",
        balance=Decimal("0"),
    )
    opponent = models.User(
        username="bob",
        phone="+254722222222",
        chess_com_username="BobChess",
        lichess_username="bob_li",
        balance=Decimal("0"),
    )
    if not with_phones:
        challenger.phone = None
        opponent.phone = None
    db.add_all([challenger, opponent])
    db.flush()
    challenge = models.Challenge(
        challenger_id=challenger.id,
        opponent_id=opponent.id,
        platform=platform,
        time_control=time_control,
        bet_amount=Decimal(stake) if stake is not None else None,
        status=status,
        payment_status="completed" if status == "deposits_complete" else "pending",
        challenger_phone="+254711111111" if with_phones else None,
        opponent_phone="+254722222222" if with_phones else None,
        accepted_at=utcnow() - timedelta(minutes=accepted_minutes_ago) if accepted_minutes_ago is not None else utcnow(),
    )
    db.add(challenge)
    db.commit()
    db.refresh(challenge)
    return challenge


def make_match(db, challenge, started_minutes_ago=0):
    match = models.OngoingMatch(
        challenge_id=challenge.id,
        challenger_id=challenge.challenger_id,
        opponent_id=challenge.opponent_id,
        challenger_username="AliceChess",
        opponent_username="BobChess",
        platform=challenge.platform,
        time_control=challenge.time_control,
        started_at=utcnow() - timedelta(minutes=started_minutes_ago),
    )
    db.add(match)
    db.commit()
    db.refresh(match)
    return match


def make_payment(db, challenge, user_id, status="pending", request_id=None, transaction_type="deposit", amount=None, **extra):
    payment = models.Payment(
        user_id=user_id,
        challenge_id=challenge.id,
        phone_number="+254711111111" if user_id == challenge.challenger_id else "+254722222222",
        amount=Decimal(amount) if amount is not None else challenge.bet_amount,
        transaction_type=transaction_type,
        status=status,
        request_id=request_id or f"DEP_{challenge.id}_{user_id}_1760555690220",
        **extra,
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)
    return payment


def balance_of(db, user_id) -> Decimal:
    db.expire_all()
    return Decimal(str(db.get(models.User, user_id).balance))
