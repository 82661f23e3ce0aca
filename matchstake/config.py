from enum import Enum
from decimal import Decimal
from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    db_url: str = "sqlite:///./matchstake.db"
    bearer_token: Optional[str] = None
    background_workers_enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8000

    # chess.com public API
    chess_api_base_url: AnyHttpUrl = "https://api.chess.com/pub"
    chess_api_user_agent: str = "matchstake-result-checker/0.1"
    chess_api_timeout_seconds: float = 15.0
    chess_api_initial_delay_seconds: float = 2.0
    chess_api_min_delay_seconds: float = 1.5
    chess_api_max_error_delay_seconds: float = 5.0
    chess_api_max_rate_limited_delay_seconds: float = 10.0
    rate_limit_cooldown_seconds: float = 300.0
    cache_sweep_seconds: float = 300.0

    # mobile money gateway
    gateway_base_url: AnyHttpUrl = "https://api.onitmfbank.com"
    gateway_auth_path: str = "/api/v1/auth/jwt"
    gateway_username: str = "change_me"
    gateway_password: str = "change_me"
    gateway_account: str = "0001650000002"
    gateway_channel: str = "MPESA"
    gateway_deposit_product: str = "CA05"
    gateway_withdraw_product: str = "CA04"
    gateway_callback_url: AnyHttpUrl = "http://localhost:8000/api/payments/callback"
    gateway_timeout_seconds: float = 30.0

    minimum_payout: Decimal = Decimal("10")
    phone_country_code: str = "254"
    currency: str = "KES"

    # result polling
    result_check_interval_seconds: float = 120.0
    max_result_checks: int = 4
    result_window_minutes: int = 30
    default_match_duration_seconds: int = 300
    assumed_moves: int = 30

    # unpaid challenge sweep
    payment_sweep_interval_seconds: float = 300.0
    partial_payment_timeout_seconds: float = 300.0
    full_expiry_timeout_seconds: float = 300.0

    stale_payment_minutes: int = 30

settings = Settings()


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    PAYOUT = "payout"
    REFUND = "refund"
    BALANCE_CREDIT = "balance_credit"
    BET = "bet"
    STAKE = "stake"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ChallengeStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DEPOSITS_COMPLETE = "deposits_complete"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    POSTPONED = "postponed"


class ChallengePaymentStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class CacheCategory(str, Enum):
    PLAYER_STATS = "player_stats"
    GAME_ARCHIVES = "game_archives"
    MONTHLY_GAMES = "monthly_games"
    PLAYER_PROFILE = "player_profile"
    DEFAULT = "default"


cache_ttl_seconds = {
    CacheCategory.PLAYER_STATS: 15 * 60,
    CacheCategory.GAME_ARCHIVES: 30 * 60,
    CacheCategory.MONTHLY_GAMES: 5 * 60,
    CacheCategory.PLAYER_PROFILE: 30 * 60,
    CacheCategory.DEFAULT: 5 * 60,
}

platform_username_field = {
    "chess.com": "chess_com_username",
    "lichess": "lichess_username",
}
