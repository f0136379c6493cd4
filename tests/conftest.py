from __future__ import annotations

import json
from pathlib import Path

import pytest

from mediagate.antibot import is_pow_solution_valid
from mediagate.app import create_app
from mediagate.config import Settings
from mediagate.extractor import ExtractorOutput
from mediagate.gate import GateContext


class FakeExtractor:
    """Stands in for yt-dlp: writes a file into the job dir and prints its path."""

    def __init__(self) -> None:
        self.filename = 'Video Title-abc123.mp4'
        self.payload = b'fake media bytes'
        self.printed_path: str | None = None
        self.error: Exception | None = None
        self.metadata: dict = {'title': 'Video', 'formats': []}
        self.metadata_error: Exception | None = None
        self.calls: list[Path] = []
        self.on_fetch = None

    def fetch(self, job_dir: Path, request) -> ExtractorOutput:
        self.calls.append(job_dir)
        if self.on_fetch is not None:
            self.on_fetch(job_dir)
        if self.error is not None:
            raise self.error
        target = job_dir / self.filename
        target.write_bytes(self.payload)
        printed = self.printed_path if self.printed_path is not None else str(target)
        return ExtractorOutput(stdout=f'[download] 100%\n{printed}\n', stderr='')

    def fetch_metadata(self, url: str) -> ExtractorOutput:
        if self.metadata_error is not None:
            raise self.metadata_error
        return ExtractorOutput(stdout=json.dumps(self.metadata), stderr='')


def solve_challenge(challenge_id: str, nonce: str) -> int:
    solution = 0
    while not is_pow_solution_valid(challenge_id, nonce, solution):
        solution += 1
    return solution


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(data_dir=tmp_path / 'data', transfer_dir=tmp_path / 'transfer')


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def context(settings: Settings, extractor: FakeExtractor):
    ctx = GateContext.from_settings(settings, extractor=extractor)
    yield ctx
    ctx.jobs.shutdown()


@pytest.fixture
def app(context: GateContext):
    app = create_app(context=context)
    app.config.update(TESTING=True, MEDIAGATE_START_SWEEPER=False)
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def antibot_fields(client):
    """Returns a callable producing a solved, single-use challenge for an IP."""

    def _make(ip: str = '127.0.0.1', elapsed_ms: int = 1500) -> dict:
        resp = client.get('/api/antibot/challenge', environ_base={'REMOTE_ADDR': ip})
        challenge = resp.get_json()
        return {
            'antibot_challenge_id': challenge['challenge_id'],
            'antibot_solution': solve_challenge(challenge['challenge_id'], challenge['nonce']),
            'antibot_elapsed_ms': elapsed_ms,
            'antibot_honey': '',
        }

    return _make
