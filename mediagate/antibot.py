import uuid
import hashlib
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta

import requests

from .config import (
    ANTIBOT_CHALLENGE_TTL_SECONDS,
    ANTIBOT_DIFFICULTY_HEX_PREFIX,
    ANTIBOT_MIN_ELAPSED_MS,
    MAX_ANTIBOT_CHALLENGES,
    TURNSTILE_TIMEOUT_SECONDS,
    TURNSTILE_VERIFY_URL,
    non_empty,
)
from .errors import BotCheckFailed
from .storage import utcnow

logger = logging.getLogger(__name__)

BLOCKED_MESSAGE = 'Request blocked by anti-bot filter.'
RETRY_MESSAGE = 'Could not validate the anti-bot check. Please try again.'


@dataclass
class Challenge:
    challenge_id: str
    nonce: str
    created_at: datetime
    client: str


@dataclass
class Submission:
    """Anti-bot fields carried on a download request."""

    challenge_id: str | None = None
    solution: int | None = None
    honey: object = None
    elapsed_ms: int = 0
    turnstile_token: str | None = None

    @classmethod
    def from_payload(cls, data: dict) -> 'Submission':
        return cls(
            challenge_id=non_empty(data.get('antibot_challenge_id')),
            solution=_as_unsigned(data.get('antibot_solution')),
            honey=data.get('antibot_honey'),
            elapsed_ms=_as_unsigned(data.get('antibot_elapsed_ms')) or 0,
            turnstile_token=non_empty(data.get('turnstile_token')),
        )

    @property
    def honeypot_filled(self) -> bool:
        # any non-string value counts as filled
        if self.honey is None:
            return False
        if isinstance(self.honey, str):
            return bool(self.honey.strip())
        return True


def _as_unsigned(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float) and value.is_integer() and value >= 0:
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def is_pow_solution_valid(challenge_id: str, nonce: str, solution: int,
                          difficulty: int = ANTIBOT_DIFFICULTY_HEX_PREFIX) -> bool:
    digest = hashlib.sha256(f'{challenge_id}:{nonce}:{solution}'.encode()).hexdigest()
    return digest.startswith('0' * difficulty)


class ChallengeStore:
    """In-memory, single-use proof-of-work challenges bound to a client."""

    def __init__(self, ttl_seconds: int = ANTIBOT_CHALLENGE_TTL_SECONDS,
                 capacity: int = MAX_ANTIBOT_CHALLENGES, clock=utcnow):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.capacity = capacity
        self.clock = clock
        self._lock = threading.Lock()
        self._challenges: dict[str, Challenge] = {}

    def __len__(self):
        with self._lock:
            return len(self._challenges)

    def issue(self, client: str) -> Challenge:
        now = self.clock()
        challenge = Challenge(
            challenge_id=str(uuid.uuid4()),
            nonce=uuid.uuid4().hex,
            created_at=now,
            client=client,
        )
        with self._lock:
            self._prune(now)
            self._challenges[challenge.challenge_id] = challenge
            self._trim()
        return challenge

    def take(self, challenge_id: str) -> Challenge | None:
        """Remove and return a live challenge. Any lookup consumes it."""
        with self._lock:
            self._prune(self.clock())
            return self._challenges.pop(challenge_id, None)

    def _prune(self, now: datetime) -> None:
        expired = [cid for cid, c in self._challenges.items() if now - c.created_at > self.ttl]
        for cid in expired:
            del self._challenges[cid]

    def _trim(self) -> None:
        overflow = len(self._challenges) - self.capacity
        if overflow <= 0:
            return
        oldest = sorted(self._challenges.values(), key=lambda c: c.created_at)[:overflow]
        for challenge in oldest:
            del self._challenges[challenge.challenge_id]


class ProofOfWork:
    """Local fallback: hash puzzle plus a minimum interaction time."""

    name = 'pow'

    def __init__(self, store: ChallengeStore, min_elapsed_ms: int = ANTIBOT_MIN_ELAPSED_MS,
                 difficulty: int = ANTIBOT_DIFFICULTY_HEX_PREFIX):
        self.store = store
        self.min_elapsed_ms = min_elapsed_ms
        self.difficulty = difficulty

    def verify(self, client: str, submission: Submission) -> None:
        if submission.elapsed_ms < self.min_elapsed_ms:
            raise BotCheckFailed('Minimum anti-bot time not met. Wait a moment and try again.')
        if not submission.challenge_id:
            raise BotCheckFailed('Missing anti-bot challenge.')
        if submission.solution is None:
            raise BotCheckFailed('Missing anti-bot solution.')

        challenge = self.store.take(submission.challenge_id)
        if challenge is None:
            raise BotCheckFailed('Invalid or expired anti-bot challenge. Refresh and try again.')
        if challenge.client != client:
            logger.warning(f'Challenge {challenge.challenge_id} used by {client}, bound to {challenge.client}')
            raise BotCheckFailed('Anti-bot challenge does not match the request origin.')
        if not is_pow_solution_valid(challenge.challenge_id, challenge.nonce,
                                     submission.solution, self.difficulty):
            raise BotCheckFailed(RETRY_MESSAGE)


class TurnstileVerifier:
    """Delegates the check to Cloudflare Turnstile. Fails closed."""

    name = 'turnstile'

    def __init__(self, secret_key: str, session: requests.Session | None = None,
                 verify_url: str = TURNSTILE_VERIFY_URL, timeout: float = TURNSTILE_TIMEOUT_SECONDS):
        self.secret_key = secret_key
        self.session = session or requests.Session()
        self.verify_url = verify_url
        self.timeout = timeout

    def verify(self, client: str, submission: Submission) -> None:
        if not submission.turnstile_token:
            raise BotCheckFailed('Complete the anti-bot check to continue with the download.')

        try:
            response = self.session.post(
                self.verify_url,
                data={
                    'secret': self.secret_key,
                    'response': submission.turnstile_token,
                    'remoteip': client,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning(f'Turnstile request failed: {e}')
            raise BotCheckFailed(RETRY_MESSAGE) from e

        if not response.ok:
            logger.warning(f'Turnstile returned HTTP {response.status_code}')
            raise BotCheckFailed(RETRY_MESSAGE)

        try:
            verification = response.json()
        except ValueError as e:
            logger.warning(f'Invalid Turnstile response: {e}')
            raise BotCheckFailed(RETRY_MESSAGE) from e

        if not isinstance(verification, dict) or verification.get('success') is not True:
            codes = verification.get('error-codes') if isinstance(verification, dict) else None
            logger.warning(f'Turnstile rejected request from {client}: {codes}')
            raise BotCheckFailed('Anti-bot verification was rejected. Reload the page and try again.')


class AntiBotEngine:
    def __init__(self, strategy, store: ChallengeStore):
        self.strategy = strategy
        self.store = store

    @classmethod
    def from_settings(cls, settings, session: requests.Session | None = None) -> 'AntiBotEngine':
        store = ChallengeStore()
        if settings.turnstile_secret_key:
            logger.info('Turnstile enabled for anti-bot verification.')
            strategy = TurnstileVerifier(
                settings.turnstile_secret_key, session=session, verify_url=settings.turnstile_verify_url
            )
        else:
            logger.warning('TURNSTILE_SECRET_KEY not set. Using local proof-of-work fallback.')
            strategy = ProofOfWork(store)
        return cls(strategy, store)

    def issue_challenge(self, client: str) -> dict:
        challenge = self.store.issue(client)
        return {
            'challenge_id': challenge.challenge_id,
            'nonce': challenge.nonce,
            'difficulty': ANTIBOT_DIFFICULTY_HEX_PREFIX,
            'expires_in_seconds': int(self.store.ttl.total_seconds()),
        }

    def verify(self, client: str, submission: Submission) -> None:
        if submission.honeypot_filled:
            logger.warning(f'Honeypot field filled by {client}')
            raise BotCheckFailed(BLOCKED_MESSAGE)
        self.strategy.verify(client, submission)
