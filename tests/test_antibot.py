import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import requests

from mediagate.antibot import (
    AntiBotEngine,
    ChallengeStore,
    ProofOfWork,
    Submission,
    TurnstileVerifier,
    is_pow_solution_valid,
)
from mediagate.config import Settings
from mediagate.errors import BotCheckFailed

from .conftest import solve_challenge


class Clock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(clock):
    return ChallengeStore(clock=clock)


@pytest.fixture
def engine(store):
    return AntiBotEngine(ProofOfWork(store), store)


def solved(challenge, **overrides):
    fields = dict(
        challenge_id=challenge['challenge_id'],
        solution=solve_challenge(challenge['challenge_id'], challenge['nonce']),
        elapsed_ms=1200,
        honey='',
    )
    fields.update(overrides)
    return Submission(**fields)


def test_pow_rule_is_deterministic():
    solution = solve_challenge('cid', 'nonce')
    assert is_pow_solution_valid('cid', 'nonce', solution)
    assert is_pow_solution_valid('cid', 'nonce', solution)
    assert is_pow_solution_valid('cid', 'nonce', solution, difficulty=0)


def test_pow_rule_matches_hex_prefix():
    import hashlib

    for solution in range(50):
        digest = hashlib.sha256(f'cid:nonce:{solution}'.encode()).hexdigest()
        assert is_pow_solution_valid('cid', 'nonce', solution) == digest.startswith('000')


def test_issue_returns_challenge_shape(engine):
    challenge = engine.issue_challenge('1.2.3.4')
    assert challenge['difficulty'] == 3
    assert challenge['expires_in_seconds'] == 300
    assert challenge['challenge_id'] and challenge['nonce']


def test_valid_solution_passes_once(engine):
    challenge = engine.issue_challenge('1.2.3.4')
    submission = solved(challenge)

    engine.verify('1.2.3.4', submission)
    with pytest.raises(BotCheckFailed):
        engine.verify('1.2.3.4', submission)


def test_short_elapsed_time_rejects_even_with_valid_hash(engine):
    challenge = engine.issue_challenge('1.2.3.4')
    with pytest.raises(BotCheckFailed) as excinfo:
        engine.verify('1.2.3.4', solved(challenge, elapsed_ms=500))
    assert excinfo.value.status == 403
    assert excinfo.value.code == 'BOT_CHECK_FAILED'


def test_honeypot_rejects_before_anything_else(engine, store):
    challenge = engine.issue_challenge('1.2.3.4')
    with pytest.raises(BotCheckFailed):
        engine.verify('1.2.3.4', solved(challenge, honey='gotcha'))
    # the challenge was never looked up
    assert len(store) == 1


def test_wrong_client_rejects_and_consumes(engine, store):
    challenge = engine.issue_challenge('1.2.3.4')
    submission = solved(challenge)

    with pytest.raises(BotCheckFailed):
        engine.verify('5.6.7.8', submission)
    with pytest.raises(BotCheckFailed):
        engine.verify('1.2.3.4', submission)
    assert len(store) == 0


def test_wrong_solution_consumes_challenge(engine):
    challenge = engine.issue_challenge('1.2.3.4')
    good = solve_challenge(challenge['challenge_id'], challenge['nonce'])
    bad = next(
        n for n in range(good + 1, good + 100000)
        if not is_pow_solution_valid(challenge['challenge_id'], challenge['nonce'], n)
    )

    with pytest.raises(BotCheckFailed):
        engine.verify('1.2.3.4', solved(challenge, solution=bad))
    with pytest.raises(BotCheckFailed):
        engine.verify('1.2.3.4', solved(challenge, solution=good))


def test_missing_fields_reject(engine):
    challenge = engine.issue_challenge('1.2.3.4')
    with pytest.raises(BotCheckFailed):
        engine.verify('1.2.3.4', solved(challenge, challenge_id=None))
    with pytest.raises(BotCheckFailed):
        engine.verify('1.2.3.4', solved(challenge, solution=None))


def test_expired_challenge_rejects(engine, clock):
    challenge = engine.issue_challenge('1.2.3.4')
    submission = solved(challenge)
    clock.now += timedelta(minutes=5, seconds=1)

    with pytest.raises(BotCheckFailed):
        engine.verify('1.2.3.4', submission)


def test_issue_prunes_expired(store, clock):
    store.issue('a')
    clock.now += timedelta(minutes=6)
    store.issue('b')
    assert len(store) == 1


def test_capacity_evicts_oldest(clock):
    store = ChallengeStore(capacity=3, clock=clock)
    issued = []
    for _ in range(5):
        issued.append(store.issue('a'))
        clock.now += timedelta(seconds=1)

    assert len(store) == 3
    assert store.take(issued[0].challenge_id) is None
    assert store.take(issued[1].challenge_id) is None
    assert store.take(issued[4].challenge_id) is not None


def test_submission_parses_payload():
    submission = Submission.from_payload({
        'antibot_challenge_id': ' abc ',
        'antibot_solution': '42',
        'antibot_elapsed_ms': 950,
        'antibot_honey': '',
    })
    assert submission.challenge_id == 'abc'
    assert submission.solution == 42
    assert submission.elapsed_ms == 950
    assert not submission.honeypot_filled

    assert Submission.from_payload({'antibot_solution': -1}).solution is None
    assert Submission.from_payload({'antibot_solution': True}).solution is None
    assert Submission.from_payload({'antibot_honey': '  '}).honeypot_filled is False


def _turnstile(response=None, exc=None):
    session = MagicMock()
    if exc is not None:
        session.post.side_effect = exc
    else:
        session.post.return_value = response
    return TurnstileVerifier('secret', session=session), session


def _response(status=200, body=None, bad_json=False):
    response = MagicMock()
    response.ok = 200 <= status < 300
    response.status_code = status
    if bad_json:
        response.json.side_effect = ValueError('no json')
    else:
        response.json.return_value = body
    return response


def test_turnstile_success_forwards_token_and_ip():
    verifier, session = _turnstile(_response(body={'success': True}))
    verifier.verify('1.2.3.4', Submission(turnstile_token='tok'))

    _, kwargs = session.post.call_args
    assert kwargs['data'] == {'secret': 'secret', 'response': 'tok', 'remoteip': '1.2.3.4'}
    assert kwargs['timeout'] == 10


@pytest.mark.parametrize('verifier_session', [
    _turnstile(_response(body={'success': False, 'error-codes': ['invalid-input-response']})),
    _turnstile(_response(status=502, body={'success': True})),
    _turnstile(_response(bad_json=True)),
    _turnstile(_response(body=['success'])),
    _turnstile(exc=requests.Timeout('slow')),
    _turnstile(exc=requests.ConnectionError('down')),
])
def test_turnstile_fails_closed(verifier_session):
    verifier, _ = verifier_session
    with pytest.raises(BotCheckFailed):
        verifier.verify('1.2.3.4', Submission(turnstile_token='tok'))


def test_turnstile_requires_token():
    verifier, session = _turnstile(_response(body={'success': True}))
    with pytest.raises(BotCheckFailed):
        verifier.verify('1.2.3.4', Submission())
    session.post.assert_not_called()


def test_honeypot_checked_before_turnstile(store):
    verifier, session = _turnstile(_response(body={'success': True}))
    engine = AntiBotEngine(verifier, store)

    with pytest.raises(BotCheckFailed):
        engine.verify('1.2.3.4', Submission(turnstile_token='tok', honey='x'))
    session.post.assert_not_called()


def test_strategy_selected_from_settings(tmp_path):
    local = AntiBotEngine.from_settings(Settings(data_dir=tmp_path, transfer_dir=tmp_path))
    delegated = AntiBotEngine.from_settings(
        Settings(data_dir=tmp_path, transfer_dir=tmp_path, turnstile_secret_key='s'),
        session=MagicMock(),
    )
    assert isinstance(local.strategy, ProofOfWork)
    assert isinstance(delegated.strategy, TurnstileVerifier)


def test_racing_submissions_consume_each_challenge_once(engine):
    challenges = [engine.issue_challenge('1.2.3.4') for _ in range(5)]
    submissions = [solved(challenge) for challenge in challenges]
    # each submission is raced by two threads
    work = submissions * 2
    barrier = threading.Barrier(len(work))
    passed = []
    passed_lock = threading.Lock()

    def worker(submission):
        barrier.wait()
        try:
            engine.verify('1.2.3.4', submission)
        except BotCheckFailed:
            return
        with passed_lock:
            passed.append(submission.challenge_id)

    threads = [threading.Thread(target=worker, args=(s,)) for s in work]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert sorted(passed) == sorted(s.challenge_id for s in submissions)


@pytest.mark.parametrize('honey', [1, True, ['bot'], {'a': 1}])
def test_non_string_honeypot_counts_as_filled(honey):
    assert Submission.from_payload({'antibot_honey': honey}).honeypot_filled
