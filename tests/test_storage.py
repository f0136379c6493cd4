import json
import os

import pytest

from mediagate.errors import InternalFailure
from mediagate.storage import JsonDocument


def test_older_snapshot_is_dropped(tmp_path):
    doc = JsonDocument(tmp_path / 'state.json', 'state')
    doc.write({'v': 2}, 2)
    doc.write({'v': 1}, 1)

    assert json.loads((tmp_path / 'state.json').read_text()) == {'v': 2}


def test_failed_write_does_not_mask_older_snapshot(tmp_path, monkeypatch):
    path = tmp_path / 'state.json'
    doc = JsonDocument(path, 'state')
    doc.write({'v': 1}, 1)

    real_replace = os.replace
    calls = {'n': 0}

    def flaky_replace(src, dst):
        calls['n'] += 1
        if calls['n'] == 1:
            raise OSError('disk full')
        return real_replace(src, dst)

    monkeypatch.setattr('mediagate.storage.os.replace', flaky_replace)

    with pytest.raises(InternalFailure):
        doc.write({'v': 3}, 3)
    doc.write({'v': 2}, 2)

    assert json.loads(path.read_text()) == {'v': 2}
    assert [p.name for p in tmp_path.iterdir()] == ['state.json']


def test_missing_document_returns_default(tmp_path):
    assert JsonDocument(tmp_path / 'none.json', 'state').load([]) == []
