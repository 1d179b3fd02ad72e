#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def _resolve_api_base_url(explicit_value: str | None) -> str:
    if explicit_value:
        candidate = explicit_value.strip()
    else:
        candidate = os.getenv("FOLLOWUP_API_BASE_URL", "").strip() or "http://localhost:8000"
    if candidate.endswith("/api/v1/followups"):
        return candidate
    return f"{candidate.rstrip('/')}/api/v1/followups"


def _request_json(
    method: str,
    base_url: str,
    path: str,
    *,
    payload: dict[str, Any] | None = None,
    token: str | None = None,
) -> dict[str, Any]:
    body = None if payload is None else json.dumps(payload).encode("utf-8")
    headers: dict[str, str] = {"Accept": "application/json"}
    if payload is not None:
        headers["Content-Type"] = "application/json"
    if token:
        headers["Authorization"] = f"Bearer {token}"

    request = urllib.request.Request(
        f"{base_url}/{path.lstrip('/')}",
        data=body,
        headers=headers,
        method=method,
    )
    try:
        with urllib.request.urlopen(request, timeout=30) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise RuntimeError(f"{method} {path} failed with {exc.code}: {detail}") from exc


def _person_payload(entry: dict[str, Any]) -> dict[str, Any]:
    slack_links = entry.get("slack") or []
    if not isinstance(slack_links, list):
        raise SystemExit(f"person {entry.get('person_id')!r}: slack must be a list")
    return {
        "display_name": str(entry.get("display_name") or entry.get("person_id")),
        "telegram_user_id": None if entry.get("telegram_user_id") is None else str(entry["telegram_user_id"]),
        "telegram_username": entry.get("telegram_username"),
        "slack": [
            {
                "team_id": str(link.get("team_id") or ""),
                "user_id": str(link.get("user_id") or ""),
                "enabled": link.get("enabled"),
            }
            for link in slack_links
            if isinstance(link, dict)
        ],
    }


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Upsert directory people (Telegram identity + Slack links) via the admin API."
    )
    parser.add_argument("input_path", type=Path, help="JSON file with a list of people or {\"people\": [...]}.")
    parser.add_argument(
        "--api-base-url",
        default=None,
        help=(
            "Backend base URL. Accepts either host root (e.g. http://localhost:8000) "
            "or full API prefix (e.g. http://localhost:8000/api/v1/followups)."
        ),
    )
    parser.add_argument(
        "--admin-token",
        default=None,
        help="Admin API token. Defaults to ADMIN_API_TOKEN from environment/.env.",
    )
    parser.add_argument("--dry-run", action="store_true", help="Print payloads without calling the API.")
    return parser.parse_args()


def main() -> int:
    root_dir = Path(__file__).resolve().parents[1]
    _load_dotenv(root_dir / ".env")
    args = parse_args()

    raw = json.loads(args.input_path.expanduser().read_text(encoding="utf-8"))
    people = raw.get("people") if isinstance(raw, dict) else raw
    if not isinstance(people, list) or not people:
        raise SystemExit("input must contain a non-empty list of people")

    api_base_url = _resolve_api_base_url(args.api_base_url)
    admin_token = (args.admin_token or os.getenv("ADMIN_API_TOKEN", "")).strip()
    if not admin_token and not args.dry_run:
        raise SystemExit("ADMIN_API_TOKEN is required (set .env or pass --admin-token)")

    upserted = 0
    for entry in people:
        if not isinstance(entry, dict):
            continue
        person_id = str(entry.get("person_id") or "").strip()
        if not person_id:
            continue
        payload = _person_payload(entry)
        if args.dry_run:
            print(json.dumps({"person_id": person_id, **payload}, ensure_ascii=False))
            continue
        _request_json("PUT", api_base_url, f"directory/people/{person_id}", payload=payload, token=admin_token)
        upserted += 1

    if not args.dry_run:
        print(f"Upserted {upserted} people into {api_base_url}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
