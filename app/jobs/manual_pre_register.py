import argparse
import json
from contextlib import contextmanager

from app.db import get_connection
from app.jobs.worker_pool import InlineJobPool
from app.services.repository import PostgresRepository
from app.services.sync_job_service import submit_pre_register_job


def _load_rows(path: str) -> list[dict]:
    with open(path, encoding="utf-8") as fp:
        data = json.load(fp)
    if isinstance(data, dict):
        data = data.get("rows") or []
    if not isinstance(data, list):
        raise SystemExit("input must be a JSON list of rows or an object with a 'rows' list")
    return [row for row in data if isinstance(row, dict)]


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(description="Run one pre-registration batch synchronously")
    parser.add_argument("--union-id", required=True, help="Union (tenant) id")
    parser.add_argument("--input", required=True, help="Path to a JSON file with ownership rows")
    parser.add_argument("--update-existing", action="store_true", help="Overwrite duplicates instead of skipping")
    args = parser.parse_args(argv)

    rows = _load_rows(args.input)

    with get_connection() as conn:
        repo = PostgresRepository(conn)

        @contextmanager
        def same_repository():
            yield repo

        job = submit_pre_register_job(
            repo,
            InlineJobPool(same_repository),
            union_id=args.union_id,
            rows=rows,
            update_existing=args.update_existing,
        )
        final = repo.get_sync_job(str(job["id"])) or job

    print(json.dumps(final, ensure_ascii=False, indent=2, default=str))


if __name__ == "__main__":
    main()
