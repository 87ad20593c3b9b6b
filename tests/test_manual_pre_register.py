import json
from contextlib import contextmanager

import pytest

import app.jobs.manual_pre_register as cli


@contextmanager
def _fake_connection():
    yield object()


def test_cli_runs_batch_and_prints_final_job(registry_repo, job_env, tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(cli, "get_connection", _fake_connection)
    monkeypatch.setattr(cli, "PostgresRepository", lambda conn: registry_repo)
    payload = {
        "rows": [
            {"소유자명": "홍길동", "법정동": "서울특별시 종로구 청운동", "지번": "123-4, 123-45"},
            "not a row",
        ]
    }
    path = tmp_path / "rows.json"
    path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")

    cli.main(["--union-id", "U1", "--input", str(path)])

    final = json.loads(capsys.readouterr().out)
    assert final["status"] == "COMPLETED"
    assert final["total_count"] == 1
    assert final["result"]["matched_count"] == 2
    assert len(registry_repo.pre_members) == 2


def test_cli_rejects_non_list_input(tmp_path):
    path = tmp_path / "rows.json"
    path.write_text(json.dumps({"rows": "x"}), encoding="utf-8")

    with pytest.raises(SystemExit):
        cli.main(["--union-id", "U1", "--input", str(path)])
