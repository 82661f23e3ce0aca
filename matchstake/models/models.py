from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from matchstake.database import Base


class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"
    id = Column(Integer, primary_key=True)
    key = Column(String, unique=True, index=True, nullable=False)
    request_hash = Column(String, nullable=False)
    response_body = Column(JSON, nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    username = Column(String(255), unique=True, nullable=False)
    phone = Column(String(20), nullable=True)
    chess_com_username = Column(String(255), nullable=True)
    lichess_username = Column(String(255), nullable=True)
    balance = Column(Numeric(10, 2), nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class Challenge(Base):
    __tablename__ = "challenges"
    id = Column(Integer, primary_key=True)
    challenger_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    opponent_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    platform = Column(String(50), nullable=False, default="chess.com")
    time_control = Column(String(20), nullable=True)
    bet_amount = Column(Numeric(10, 2), nullable=True)
    status = Column(String(20), nullable=False, default="pending")  # see ChallengeStatus
    payment_status = Column(String(20), nullable=False, default="none")
    challenger_phone = Column(String(20), nullable=True)
    opponent_phone = Column(String(20), nullable=True)
    accepted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class Payment(Base):
    __tablename__ = "payments"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    challenge_id = Column(Integer, ForeignKey("challenges.id"), index=True, nullable=True)
    phone_number = Column(String(20), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    transaction_type = Column(String(20), index=True, nullable=False)  # see TransactionType
    status = Column(String(20), index=True, nullable=False, default="pending")
    request_id = Column(String(255), unique=True, index=True, nullable=False)
    transaction_id = Column(String(255), nullable=True)
    transaction_reference = Column(String(255), nullable=True)
    callback_data = Column(JSON, nullable=True)
    opponent_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class OngoingMatch(Base):
    __tablename__ = "ongoing_matches"
    id = Column(Integer, primary_key=True)
    challenge_id = Column(Integer, ForeignKey("challenges.id"), nullable=False)
    challenger_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    opponent_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    challenger_username = Column(String(255), nullable=False)
    opponent_username = Column(String(255), nullable=False)
    platform = Column(String(50), nullable=False)
    time_control = Column(String(20), nullable=True)
    started_at = Column(DateTime, server_default=func.now())
    result_checked = Column(Boolean, nullable=False, default=False)
    winner_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    result = Column(String(50), nullable=True)
    match_result = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    __table_args__ = (UniqueConstraint("challenge_id", name="uq_ongoing_match_challenge"),)
