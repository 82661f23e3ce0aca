import json
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from matchstake.components import Components, build_components
from matchstake.config import settings
from matchstake.database import SessionLocal, engine, get_db
from matchstake.db import get_or_create_idempotency, store_idempotency
from matchstake.exceptions import InvalidArgument
from matchstake.helpers import hash_request, parse_id, serialize_payment
from matchstake.logging_config import get_logger
from matchstake.matches import resume_unresolved, start_match
from matchstake.models import models
from matchstake.payments import PaymentResult
from matchstake.reconciliation import generate_stale_payments_csv
from matchstake.schemas.app_schemas import (
    DepositRequest,
    MatchResponse,
    PaymentResponse,
    StartMatchRequest,
    WithdrawalRequest,
)
from matchstake.security import require_bearer_token


logger = get_logger(__name__)

models.Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, FastAPI]:
    components = build_components(SessionLocal)
    app.state.components = components
    if settings.background_workers_enabled:
        logger.info("Starting cache sweeper, payment timeout sweeper and result checks")
        components.chess_api.start_cache_sweeper()
        components.sweeper.start()
        db = SessionLocal()
        try:
            resume_unresolved(db, components.poller)
        finally:
            db.close()
    yield

    await components.close()
    engine.dispose()


app = FastAPI(title="Match Settlement Engine", lifespan=app_lifespan)


@app.exception_handler(InvalidArgument)
async def invalid_argument_handler(_: Request, exc: InvalidArgument):
    return JSONResponse(status_code=400, content={"success": False, "field": exc.field, "message": str(exc)})


def get_components(request: Request) -> Components:
    return request.app.state.components


def _payment_response(result: PaymentResult, message: str) -> dict:
    payment = result.payment
    return PaymentResponse(
        success=result.success,
        message=message if result.success else "Payment request failed",
        requestId=payment.request_id if payment else None,
        transactionId=payment.transaction_id if payment else None,
        status=payment.status if payment else None,
        creditedToBalance=result.credited_to_balance,
        error=result.error,
    ).model_dump()


@app.post("/api/payments/deposit", response_model=PaymentResponse)
async def deposit(
    request: DepositRequest,
    db: Session = Depends(get_db),
    components: Components = Depends(get_components),
    idempotency_key: str | None = Header(None),
):
    body = request.model_dump()
    body_hash = hash_request(body)
    if idempotency_key:
        existing = get_or_create_idempotency(db, idempotency_key, body_hash)
        if existing:
            return existing
    result = await components.payments.initiate_deposit(
        db, request.phoneNumber, request.amount, request.userId, request.challengeId
    )
    response = _payment_response(result, "Deposit initiated, confirm the prompt on your phone")
    if idempotency_key:
        store_idempotency(db, idempotency_key, body_hash, response)
    return response


@app.post("/api/payments/withdraw", response_model=PaymentResponse)
async def withdraw(
    request: WithdrawalRequest,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
    components: Components = Depends(get_components),
):
    result = await components.payments.initiate_withdrawal(
        db, request.phoneNumber, request.amount, request.userId, request.challengeId, is_refund=request.isRefund
    )
    message = "Amount credited to balance" if result.credited_to_balance else "Withdrawal initiated"
    return _payment_response(result, message)


@app.post("/api/payments/callback")
async def payment_callback(
    request: Request,
    db: Session = Depends(get_db),
    components: Components = Depends(get_components),
):
    raw = await request.body()
    try:
        payload = json.loads(raw) if raw else None
    except ValueError:
        logger.warning("Callback body is not valid JSON length=%s", len(raw))
        return JSONResponse(status_code=200, content={"success": False, "message": "Invalid JSON body"})
    status_code, body = await components.reconciler.handle(db, payload)
    return JSONResponse(status_code=status_code, content=body)


@app.get("/api/payments/status")
async def payment_status(challengeId: str = Query(...), db: Session = Depends(get_db)):
    challenge_id = parse_id(challengeId, "challengeId")
    payments = (
        db.query(models.Payment)
        .filter(models.Payment.challenge_id == challenge_id)
        .order_by(models.Payment.created_at.asc(), models.Payment.id.asc())
        .all()
    )
    return {"challengeId": challenge_id, "payments": [serialize_payment(p) for p in payments]}


@app.post("/api/matches", response_model=MatchResponse)
async def create_match(
    request: StartMatchRequest,
    db: Session = Depends(get_db),
    components: Components = Depends(get_components),
):
    match, created = start_match(db, components.poller, request.challengeId)
    return MatchResponse(
        matchId=match.id,
        challengeId=match.challenge_id,
        created=created,
        challengerUsername=match.challenger_username,
        opponentUsername=match.opponent_username,
        platform=match.platform,
        resultChecked=match.result_checked,
    )


@app.delete("/api/matches/{match_id}/checker")
async def stop_match_checker(
    match_id: int,
    _auth=Depends(require_bearer_token),
    components: Components = Depends(get_components),
):
    if not components.poller.stop(match_id):
        raise HTTPException(status_code=404, detail="no active result checker for match")
    return {"matchId": match_id, "stopped": True}


@app.get("/status/queues")
async def queue_status(
    _auth=Depends(require_bearer_token),
    components: Components = Depends(get_components),
):
    return {
        "chessApi": components.chess_api.status(),
        "gateway": components.gateway.status(),
        "poller": components.poller.status(),
        "connectedPlayers": components.notifier.connected_users(),
    }


@app.get("/reconciliation_data")
async def download_reconciliation_csv(
    olderThanMinutes: int | None = Query(None, ge=0),
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    csv_text, stale_count = generate_stale_payments_csv(db, olderThanMinutes)
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={
            "Content-Disposition": 'attachment; filename="stale_payments.csv"',
            "X-Stale-Count": str(stale_count),
        },
    )


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.websocket("/ws/{user_id}")
async def player_events(websocket: WebSocket, user_id: int):
    notifier = websocket.app.state.components.notifier
    await notifier.connect(user_id, websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        notifier.disconnect(user_id, websocket)
