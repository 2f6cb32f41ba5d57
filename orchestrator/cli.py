from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from contracts.schemas import Capsule, Classification, Geofence, Location, ReasonCode, as_utc
from eligibility_policy import evaluate_eligibility

EXIT_CODES = {
    ReasonCode.ELIGIBLE: 0,
    ReasonCode.TIME_PENDING: 2,
    ReasonCode.LOCATION_PENDING: 3,
    ReasonCode.BOTH_PENDING: 4,
}


def _load_json(path: str | None) -> dict:
    if path:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    return json.load(sys.stdin)


def _parse_instant(value: Any) -> datetime:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        return as_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
    raise ValueError(f"not a timestamp: {value!r}")


def _parse_location(value: str) -> Location:
    lat, sep, lon = value.partition(",")
    if not sep:
        raise ValueError("location must be LAT,LON")
    return Location(latitude=float(lat), longitude=float(lon))


def _build_capsule(raw: dict) -> Capsule:
    fence_raw = raw.get("geofence") or None
    geofence = None
    if fence_raw is not None:
        geofence = Geofence(
            latitude=float(fence_raw["latitude"]),
            longitude=float(fence_raw["longitude"]),
            radius_meters=float(fence_raw["radius_meters"]),
        )
    return Capsule(
        id=str(raw.get("id", "")),
        owner=str(raw.get("owner", "")),
        title=str(raw.get("title", "")),
        description=str(raw.get("description", "")),
        classification=Classification(raw.get("classification", Classification.STANDARD.value)),
        content_pointer=str(raw.get("content_pointer", "")),
        wrapped_content_key=str(raw.get("wrapped_content_key", "")),
        unlock_timestamp=_parse_instant(raw.get("unlock_timestamp")),
        geofence=geofence,
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Evaluate a capsule's time-lock and geofence.")
    parser.add_argument("--capsule", help="capsule JSON file (stdin when omitted)")
    parser.add_argument("--location", help="current position as LAT,LON")
    parser.add_argument("--now", help="evaluation instant, ISO 8601 (defaults to now)")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING, stream=sys.stderr)

    try:
        capsule = _build_capsule(_load_json(args.capsule))
        location = _parse_location(args.location) if args.location else None
        now = _parse_instant(args.now) if args.now else None
    except (KeyError, TypeError, ValueError) as e:
        print(json.dumps({"error": "invalid_input", "detail": str(e)}, sort_keys=True))
        return 1

    result = evaluate_eligibility(capsule, now=now, location=location)
    print(json.dumps(result.to_dict(), sort_keys=True))
    return EXIT_CODES[result.reason]


if __name__ == "__main__":
    raise SystemExit(main())
