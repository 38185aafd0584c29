#!/usr/bin/env python3
"""
Smoke test for secure document delivery deployments.

Flow (default):
1. Health check
2. Missing-token rejection on /api/download
3. Issue a preview link, open it twice
4. Issue a download link, redeem it, verify the second redemption is refused

Steps 3-4 need a dashboard session JWT (--session-jwt or LABBEN_SESSION_JWT)
and the id of a document that exists in the target environment.

Usage:
    ./scripts/smoke-test.py https://staging.example.com --document-id <uuid>
    ./scripts/smoke-test.py https://staging.example.com --health-only
"""

import argparse
import json
import os
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

SkipCheck = Callable[["SmokeContext"], str | None]

DEFAULT_TIMEOUT_SECONDS = 30.0
BODY_PREVIEW_CHARS = 200


class ApiError(RuntimeError):
    def __init__(self, status_code: int, body: str):
        super().__init__(f"API error {status_code}: {body}")
        self.status_code = status_code
        self.body = body


def log(msg: str) -> None:
    """Print timestamped log message."""
    print(f"[{datetime.now().strftime('%H:%M:%S')}] {msg}", flush=True)


@dataclass
class HttpClient:
    base_url: str
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        body: bytes | None = None,
    ) -> tuple[int, dict[str, str], bytes]:
        request = Request(url, data=body, headers=headers or {}, method=method)
        try:
            with urlopen(request, timeout=self.timeout_seconds) as response:
                return response.getcode(), dict(response.headers.items()), response.read()
        except HTTPError as e:
            error_body = e.read() if e.fp else b""
            resp_headers = dict(e.headers.items()) if e.headers else {}
            return e.code, resp_headers, error_body
        except (URLError, TimeoutError) as e:
            raise RuntimeError(f"Network error: {e}") from e

    def api_json(
        self,
        method: str,
        path: str,
        *,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        req_headers = {"Content-Type": "application/json", **(headers or {})}
        body = json.dumps(data).encode() if data is not None else None
        status, _, raw = self.request(
            method, f"{self.base_url}/api/v1{path}", headers=req_headers, body=body
        )
        if status < 200 or status >= 300:
            raise ApiError(status, raw.decode("utf-8", errors="replace")[:BODY_PREVIEW_CHARS])
        return json.loads(raw.decode())


@dataclass
class SmokeContext:
    client: HttpClient
    max_health_attempts: int
    session_jwt: str | None = None
    document_id: str | None = None

    def auth_headers(self) -> dict[str, str]:
        if not self.session_jwt:
            raise RuntimeError("Missing session JWT")
        return {"Authorization": f"Bearer {self.session_jwt}"}

    def issue(self, action_type: str) -> dict[str, Any]:
        return self.client.api_json(
            "POST",
            f"/documents/{self.document_id}/tokens",
            data={"action_type": action_type},
            headers=self.auth_headers(),
        )

    def delivery_path(self, url: str) -> str:
        # Links are built against PUBLIC_BASE_URL, which may differ from the host under test
        return self.client.base_url + url[url.index("/api/") :]


@dataclass(frozen=True)
class Step:
    name: str
    run: Callable[[SmokeContext], None]
    # Return `None` to run the step; return a string to skip with that reason.
    skip_reason: SkipCheck | None = None


def run_steps(ctx: SmokeContext, steps: list[Step]) -> bool:
    overall_start = time.time()
    for step in steps:
        reason = step.skip_reason(ctx) if step.skip_reason else None
        if reason:
            log(f"SKIP: {step.name}: {reason}")
            continue

        log(f"STEP: {step.name}")
        start = time.time()
        try:
            step.run(ctx)
        except Exception as e:
            log(f"FAILED: {step.name}: {e}")
            return False
        log(f"OK: {step.name} ({time.time() - start:.2f}s)")

    log(f"Total: {time.time() - overall_start:.2f}s")
    return True


def step_health(ctx: SmokeContext) -> None:
    url = f"{ctx.client.base_url}/health"
    for attempt in range(1, ctx.max_health_attempts + 1):
        try:
            status, _, body = ctx.client.request("GET", url)
            if status == 200 and json.loads(body.decode()).get("status") == "healthy":
                log(f"Health check passed (attempt {attempt})")
                return
        except (json.JSONDecodeError, RuntimeError):
            pass
        time.sleep(2.0)
    raise RuntimeError("Health check failed")


def step_missing_token(ctx: SmokeContext) -> None:
    status, _, body = ctx.client.request("GET", f"{ctx.client.base_url}/api/download")
    if status != 400 or json.loads(body.decode()) != {"error": "Token is required"}:
        raise RuntimeError(f"Expected 400 Token is required, got {status}: {body[:200]!r}")


def step_preview(ctx: SmokeContext) -> None:
    link = ctx.issue("preview")
    url = ctx.delivery_path(link["url"])
    for attempt in (1, 2):
        status, headers, body = ctx.client.request("GET", url)
        if status != 200:
            raise RuntimeError(f"Preview attempt {attempt} returned {status}: {body[:200]!r}")
        disposition = headers.get("Content-Disposition", "")
        if not disposition.startswith("inline"):
            raise RuntimeError(f"Unexpected Content-Disposition: {disposition!r}")
    log(f"Preview served twice ({len(body)} bytes)")


def step_download(ctx: SmokeContext) -> None:
    link = ctx.issue("download")
    url = ctx.delivery_path(link["url"])

    status, headers, body = ctx.client.request("GET", url)
    if status != 200:
        raise RuntimeError(f"Download returned {status}: {body[:200]!r}")
    if not headers.get("Content-Disposition", "").startswith("attachment"):
        raise RuntimeError("Download is not served as an attachment")
    log(f"Downloaded {len(body)} bytes")

    status, _, body = ctx.client.request("GET", url)
    if status != 403:
        raise RuntimeError(f"Second download should be refused, got {status}: {body[:200]!r}")


def skip_without_session(ctx: SmokeContext) -> str | None:
    if not ctx.session_jwt:
        return "no session JWT"
    if not ctx.document_id:
        return "no --document-id"
    return None


def main() -> int:
    parser = argparse.ArgumentParser(description="Secure document delivery smoke test")
    parser.add_argument("base_url", help="Base URL (e.g., https://staging.example.com)")
    parser.add_argument("--health-only", action="store_true", help="Only run health check")
    parser.add_argument("--document-id", help="Existing document to issue links for")
    parser.add_argument(
        "--session-jwt",
        default=os.environ.get("LABBEN_SESSION_JWT"),
        help="Dashboard session JWT (default: $LABBEN_SESSION_JWT)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT_SECONDS,
        help=f"HTTP timeout seconds (default: {DEFAULT_TIMEOUT_SECONDS:g})",
    )
    parser.add_argument(
        "--max-health-attempts",
        type=int,
        default=30,
        help="Max health check attempts (default: 30)",
    )
    args = parser.parse_args()

    client = HttpClient(base_url=args.base_url.rstrip("/"), timeout_seconds=args.timeout)
    ctx = SmokeContext(
        client=client,
        max_health_attempts=args.max_health_attempts,
        session_jwt=args.session_jwt,
        document_id=args.document_id,
    )

    steps: list[Step] = [Step("health", step_health)]
    if args.health_only:
        log("Health-only mode: skipping full flow")
    else:
        steps.extend(
            [
                Step("missing token", step_missing_token),
                Step("preview", step_preview, skip_reason=skip_without_session),
                Step("download", step_download, skip_reason=skip_without_session),
            ]
        )

    return 0 if run_steps(ctx, steps) else 1


if __name__ == "__main__":
    sys.exit(main())
