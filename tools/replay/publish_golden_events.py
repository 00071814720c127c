from __future__ import annotations

import argparse
import glob
import json
import sys
from pathlib import Path

# Allow running from repo root without installing as a package.
sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

import redis  # type: ignore

from src.contracts.streams import REPOSITORY_HTTP_REQUEST_V1
from src.contracts.validation import validate_envelope_dict
from src.core.models import ClientResponse


def _iter_event_files(root: Path) -> list[Path]:
    return [Path(p) for p in sorted(glob.glob(str(root / "*.json")))]


def _wait_reply(r: "redis.Redis", *, reply_to: str, correlation_id: str, last_id: str, timeout_ms: int) -> dict | None:
    resp = r.xread({reply_to: last_id}, block=timeout_ms)
    for _, items in resp or []:
        for _, fields in items:
            ev = json.loads(fields.get("event") or "{}")
            if ev.get("correlation_id") == correlation_id:
                return ev
    return None


def main() -> None:
    ap = argparse.ArgumentParser(description="Send golden repository requests through the bridge channel.")
    ap.add_argument("--redis-url", required=True)
    ap.add_argument("--address", default=REPOSITORY_HTTP_REQUEST_V1)
    ap.add_argument("--events-dir", default=str(Path("contracts") / "golden_events" / "v1"))
    ap.add_argument("--dry-run", action="store_true")
    ap.add_argument("--wait", action="store_true", help="Wait for each reply and print its status.")
    ap.add_argument("--timeout-ms", type=int, default=10000)
    ap.add_argument(
        "--fail-on-invalid",
        action="store_true",
        help="By default invalid (dirty) golden events are skipped. Use this flag to fail fast instead.",
    )
    args = ap.parse_args()

    root = Path(args.events_dir)
    files = _iter_event_files(root)
    if not files:
        raise SystemExit(f"no golden events found under {root}")

    r = redis.Redis.from_url(args.redis_url, decode_responses=True)
    for fp in files:
        ev = json.loads(fp.read_text(encoding="utf-8"))
        try:
            validate_envelope_dict(ev)
        except ValueError as e:
            if args.fail_on_invalid:
                raise
            print(f"[skip-invalid] {fp.name}: {e}")
            continue
        if ev["schema"] != REPOSITORY_HTTP_REQUEST_V1:
            print(f"[skip-not-request] {fp.name}")
            continue

        body = json.dumps(ev, ensure_ascii=False)
        if args.dry_run:
            print(f"[dry-run] xadd {args.address} <- {fp.name}")
            continue

        # Remember the reply stream tail before sending so the answer is not missed.
        last_id = "$"
        if args.wait:
            tail = r.xrevrange(ev["reply_to"], count=1)
            last_id = tail[0][0] if tail else "0-0"
        r.xadd(args.address, {"event": body})
        print(f"xadd {args.address} <- {fp.name}")

        if args.wait:
            reply = _wait_reply(r, reply_to=ev["reply_to"], correlation_id=ev["event_id"], last_id=last_id, timeout_ms=args.timeout_ms)
            if reply is None:
                print(f"  no reply within {args.timeout_ms} ms")
                continue
            response = ClientResponse.from_payload(reply["payload"])
            print(f"  <- {response.status_code} ({len(response.body)} bytes)")


if __name__ == "__main__":
    main()
