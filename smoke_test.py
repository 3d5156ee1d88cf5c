#!/usr/bin/env python3
"""
QM engine post-deploy smoke test.
Hits the health check and the catalog, then runs one rating round-trip
with a known score set and checks the expected composite comes back.
Usage:
    python smoke_test.py                          # uses localhost:8000
    python smoke_test.py https://your-url.app     # custom base URL
Exit codes:
    0 = all checks passed
    1 = one or more checks failed

Webhook alerting:
    Set SMOKE_ALERT_WEBHOOK to a Slack or Discord webhook URL.
    On failure, a JSON payload is POSTed with a "text" field summary.
    If unset, alerting is silently skipped.
"""
import json
import os
import sys
import urllib.request
import urllib.error
from datetime import datetime, timezone

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
DEFAULT_BASE_URL = "http://127.0.0.1:8000"

# Falls at 3.2 (fair, 3 pts) + rehospitalization at 16 (good, 4 pts, 1.5x)
# -> (3 + 6) / 2.5 = 3.6
KNOWN_SCORES = {"ls_falls": 3.2, "ss_rehospitalization": 16.0}
KNOWN_RATING = 3.6

MIN_MEASURES = 10


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def fetch(url: str, payload: dict | None = None) -> tuple[int, dict | None]:
    """GET (or POST *payload* as JSON), return (status_code, decoded_json)."""
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    req = urllib.request.Request(
        url,
        data=data,
        headers={"User-Agent": "QM-Smoke/1.0", "Content-Type": "application/json"},
        method="POST" if data is not None else "GET",
    )
    try:
        with urllib.request.urlopen(req, timeout=15) as resp:
            body = resp.read().decode("utf-8", errors="replace")
            return resp.status, json.loads(body) if body else None
    except urllib.error.HTTPError as e:
        return e.code, None
    except (urllib.error.URLError, json.JSONDecodeError, OSError) as e:
        print(f"  FETCH ERROR: {e}")
        return 0, None


def send_webhook_alert(failures: list[str]) -> None:
    """POST a failure summary to SMOKE_ALERT_WEBHOOK. Fire-and-forget."""
    webhook_url = os.environ.get("SMOKE_ALERT_WEBHOOK", "").strip()
    if not webhook_url:
        return

    commit = os.environ.get("GIT_COMMIT_SHA", "unknown")[:7]
    timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    text = f"QM engine smoke test failed on deploy {commit} at {timestamp}: {'; '.join(failures)}"

    req = urllib.request.Request(
        webhook_url,
        data=json.dumps({"text": text}).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=5):
            pass
    except (urllib.error.URLError, OSError) as e:
        print(f"  ALERT WARN: webhook POST failed ({e})")


# ---------------------------------------------------------------------------
# Test runner
# ---------------------------------------------------------------------------
def run_tests(base_url: str) -> bool:
    failures: list[str] = []

    # --- Test 1: health check ---
    print(f"\n[1] Health check: {base_url}/healthz")
    status, body = fetch(f"{base_url}/healthz")
    if status != 200 or not body or body.get("status") != "ok":
        print(f"  FAIL: status {status}, body {body}")
        failures.append(f"Test 1 (healthz): HTTP {status}")
    else:
        print(f"  PASS (catalog {body.get('catalog_version')})")

    # --- Test 2: catalog lists measures ---
    print(f"\n[2] Catalog: {base_url}/api/measures")
    status, body = fetch(f"{base_url}/api/measures")
    count = len((body or {}).get("measures", []))
    if status != 200 or count < MIN_MEASURES:
        print(f"  FAIL: status {status}, {count} measures (minimum {MIN_MEASURES})")
        failures.append(f"Test 2 (catalog): HTTP {status}, {count} measures")
    else:
        print(f"  PASS ({count} measures)")

    # --- Test 3: rating round-trip ---
    print(f"\n[3] Rating: {base_url}/api/rating")
    status, body = fetch(f"{base_url}/api/rating", {"scores": KNOWN_SCORES})
    rating = (body or {}).get("rating")
    if status != 200 or rating != KNOWN_RATING:
        print(f"  FAIL: status {status}, rating {rating} (expected {KNOWN_RATING})")
        failures.append(f"Test 3 (rating): HTTP {status}, rating {rating}")
    else:
        print(f"  PASS (rating {rating})")

    if failures:
        send_webhook_alert(failures)

    return not failures


def main():
    base_url = sys.argv[1].rstrip("/") if len(sys.argv) > 1 else DEFAULT_BASE_URL
    print("QM Engine Smoke Test")
    print(f"Target: {base_url}")
    print("=" * 60)

    ok = run_tests(base_url)

    print("\n" + "=" * 60)
    if ok:
        print("ALL CHECKS PASSED")
        sys.exit(0)
    else:
        print("ONE OR MORE CHECKS FAILED")
        sys.exit(1)


if __name__ == "__main__":
    main()
