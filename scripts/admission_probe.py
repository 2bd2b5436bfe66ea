from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.request
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import TypedDict


class HttpResult(TypedDict):
    status: int
    body: bytes


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat()


def _json_bytes(payload: object) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _http_request(
    *,
    method: str,
    url: str,
    bearer: str | None = None,
    json_body: object | None = None,
    timeout_s: float = 30.0,
) -> HttpResult:
    data = None if json_body is None else _json_bytes(json_body)
    headers = {
        "User-Agent": "EventDesk-AdmissionProbe/1.0",
        "Accept": "application/json",
    }
    if data is not None:
        headers["Content-Type"] = "application/json"
    if bearer:
        headers["Authorization"] = f"Bearer {bearer}"
    req = urllib.request.Request(url, data=data, headers=headers, method=method)
    try:
        with urllib.request.urlopen(req, timeout=timeout_s) as resp:
            return {"status": int(resp.status), "body": resp.read()}
    except urllib.error.HTTPError as exc:
        return {"status": int(exc.code), "body": exc.read()}


def _json(result: HttpResult) -> dict:
    if not result["body"]:
        return {}
    return json.loads(result["body"].decode("utf-8"))


def _create_event(*, base_url: str, token: str, capacity: int) -> str:
    start = datetime.now(tz=timezone.utc) + timedelta(days=7)
    result = _http_request(
        method="POST",
        url=f"{base_url}/api/v1/events",
        bearer=token,
        json_body={
            "title": "Admission probe",
            "start_time": _iso(start),
            "end_time": _iso(start + timedelta(hours=2)),
            "capacity": capacity,
            "status": "published",
        },
    )
    if result["status"] != 201:
        raise RuntimeError(f"Event creation failed: {result['status']} {result['body']!r}")
    return _json(result)["event"]["id"]


def _register(base_url: str, event_id: str, token: str) -> tuple[int, str | None]:
    result = _http_request(
        method="POST",
        url=f"{base_url}/api/v1/events/{event_id}/registrations",
        bearer=token,
        json_body={"registration_data": {"source": "admission-probe"}},
    )
    return result["status"], _json(result).get("error")


def run_probe(
    *, base_url: str, organizer_token: str, tokens: list[str], capacity: int
) -> dict:
    event_id = _create_event(base_url=base_url, token=organizer_token, capacity=capacity)
    with ThreadPoolExecutor(max_workers=len(tokens)) as pool:
        outcomes = list(
            pool.map(lambda token: _register(base_url, event_id, token), tokens)
        )
    counts = _json(
        _http_request(
            method="GET",
            url=f"{base_url}/api/v1/events/{event_id}/registrations/count",
        )
    )
    admitted = sum(1 for status, _ in outcomes if status == 201)
    errors: dict[str, int] = {}
    for status, error in outcomes:
        if status != 201:
            key = error or str(status)
            errors[key] = errors.get(key, 0) + 1
    return {
        "event_id": event_id,
        "capacity": capacity,
        "attempts": len(tokens),
        "admitted": admitted,
        "errors": errors,
        "active": counts.get("active"),
        "expected_admitted": min(capacity, len(set(tokens))),
    }


def main(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(
        description="Fire concurrent registrations at one event and check capacity"
    )
    parser.add_argument(
        "--base-url",
        required=True,
        help="Base URL for the target EventDesk instance",
    )
    parser.add_argument(
        "--organizer-token",
        required=True,
        help="API token of an organizer or admin used to create the probe event",
    )
    parser.add_argument(
        "--tokens-file",
        required=True,
        help="File with one participant API token per line (complete profiles)",
    )
    parser.add_argument(
        "--capacity",
        type=int,
        default=1,
        help="Capacity of the probe event (default: %(default)s)",
    )
    args = parser.parse_args(argv)

    with open(args.tokens_file, encoding="utf-8") as handle:
        tokens = [line.strip() for line in handle if line.strip()]
    if not tokens:
        print("No participant tokens found", file=sys.stderr)
        return 1

    result = run_probe(
        base_url=args.base_url.rstrip("/"),
        organizer_token=args.organizer_token,
        tokens=tokens,
        capacity=max(1, args.capacity),
    )
    print(json.dumps(result, indent=2))

    if result["active"] is not None and result["active"] > result["capacity"]:
        print("FAIL: active registrations exceed capacity")
        return 2
    if result["admitted"] != result["expected_admitted"]:
        print("FAIL: unexpected number of admissions")
        return 2
    print("OK")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
