from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from matchstake.config import ChallengeStatus
from matchstake.exceptions import InvalidArgument
from matchstake.helpers import as_naive_utc, parse_id, platform_username, utcnow
from matchstake.logging_config import get_logger
from matchstake.models import models
from matchstake.poller import MatchResultPoller
from matchstake.results import estimate_match_duration

logger = get_logger(__name__)


def start_match(db: Session, poller: MatchResultPoller, challenge_id) -> tuple[models.OngoingMatch, bool]:
    """
    Open the match for a fully paid challenge and start watching it.

    Returns the match and whether it was created by this call; calling again for the same
    challenge returns the existing match.
    """
    numeric_id = parse_id(challenge_id, "challengeId")
    existing = db.query(models.OngoingMatch).filter_by(challenge_id=numeric_id).first()
    if existing:
        return existing, False

    challenge = db.get(models.Challenge, numeric_id)
    if challenge is None:
        raise InvalidArgument("challengeId", challenge_id, f"Unknown challenge: {challenge_id}")
    if challenge.status != ChallengeStatus.DEPOSITS_COMPLETE.value:
        raise InvalidArgument(
            "challengeId", challenge_id, f"Challenge {numeric_id} is {challenge.status}, both deposits are required"
        )

    challenger = platform_username(db.get(models.User, challenge.challenger_id), challenge.platform)
    opponent = platform_username(db.get(models.User, challenge.opponent_id), challenge.platform)
    if not challenger or not opponent:
        raise InvalidArgument("challengeId", challenge_id, f"Challenge {numeric_id} has an unknown player")

    match = models.OngoingMatch(
        challenge_id=challenge.id,
        challenger_id=challenge.challenger_id,
        opponent_id=challenge.opponent_id,
        challenger_username=challenger,
        opponent_username=opponent,
        platform=challenge.platform,
        time_control=challenge.time_control,
        started_at=utcnow(),
    )
    db.add(match)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return db.query(models.OngoingMatch).filter_by(challenge_id=numeric_id).one(), False
    db.refresh(match)
    logger.info("Match %s started for challengeId=%s %s vs %s", match.id, challenge.id, challenger, opponent)
    poller.start(match)
    return match, True


def resume_unresolved(db: Session, poller: MatchResultPoller) -> int:
    """Re-arm result checks for every match still waiting on a result, e.g. after a restart."""
    now = utcnow()
    resumed = 0
    unresolved = db.query(models.OngoingMatch).filter(models.OngoingMatch.result_checked.is_(False)).all()
    for match in unresolved:
        if poller.is_watching(match.id):
            continue
        elapsed = (now - as_naive_utc(match.started_at)).total_seconds() if match.started_at else 0
        delay = max(0.0, estimate_match_duration(match.time_control) - elapsed)
        poller.start(match, initial_delay=delay)
        resumed += 1
    logger.info("Resumed result checks for %s unresolved matches", resumed)
    return resumed
