#!/usr/bin/env python3
# NYC Train Cal: per-line MTA service alert calendars behind a short cache.

from dataclasses import dataclass
import logging
import os
from typing import Callable, Optional

from flask import Flask, current_app, g, make_response, render_template, request, Response

from train_cal import mta
from train_cal.admission import ConcurrencyLimiter, TokenBucketLimiter
from train_cal.cache import CalendarCache
from train_cal.env import env_bool, env_float, env_int
from train_cal.errors import UpstreamError
from train_cal.lines import (
    LINE_COLORS,
    VALID_LINES,
    invalid_line_message,
    is_valid_line,
    strip_format_suffix,
)

log = logging.getLogger("train_cal")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

CACHE_MAX_ENTRIES = env_int("CACHE_MAX_ENTRIES", 100)
CACHE_TTL_SEC = env_float("CACHE_TTL_SEC", 30.0)

RATE_LIMIT_PER_SEC = env_float("RATE_LIMIT_PER_SEC", 10.0)
RATE_LIMIT_BURST = env_int("RATE_LIMIT_BURST", 20)
RATE_LIMIT_IDLE_SEC = env_float("RATE_LIMIT_IDLE_SEC", 300.0)

MAX_CONCURRENT_REQUESTS = env_int("MAX_CONCURRENT_REQUESTS", 50)
# 0 means queue until a slot frees up.
CONCURRENCY_QUEUE_TIMEOUT_SEC = env_float("CONCURRENCY_QUEUE_TIMEOUT_SEC", 0.0)

TRUST_PROXY_HEADERS = env_bool("TRUST_PROXY_HEADERS", False)

ENABLE_HSTS = env_bool("ENABLE_HSTS", False)
HSTS_MAX_AGE_SEC = env_int("HSTS_MAX_AGE_SEC", 15552000)

APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
APP_PORT = env_int("APP_PORT", 3000)

CALENDAR_CONTENT_TYPE = "text/calendar; charset=utf-8"
TEXT_CONTENT_TYPE = "text/plain; charset=utf-8"
STATE_KEY = "train_cal"

CalendarFetcher = Callable[[str], str]


@dataclass
class AppState:
    cache: CalendarCache
    rate_limiter: TokenBucketLimiter
    concurrency: ConcurrencyLimiter
    fetch_calendar: CalendarFetcher
    queue_timeout_sec: Optional[float] = None


def build_state(fetch_calendar: Optional[CalendarFetcher] = None) -> AppState:
    return AppState(
        cache=CalendarCache(CACHE_MAX_ENTRIES, CACHE_TTL_SEC),
        rate_limiter=TokenBucketLimiter(RATE_LIMIT_PER_SEC, RATE_LIMIT_BURST, RATE_LIMIT_IDLE_SEC),
        concurrency=ConcurrencyLimiter(MAX_CONCURRENT_REQUESTS),
        fetch_calendar=fetch_calendar or mta.fetch_calendar,
        queue_timeout_sec=CONCURRENCY_QUEUE_TIMEOUT_SEC if CONCURRENCY_QUEUE_TIMEOUT_SEC > 0 else None,
    )


def get_state() -> AppState:
    return current_app.extensions[STATE_KEY]


def get_client_ip() -> str:
    if TRUST_PROXY_HEADERS:
        forwarded_for = request.headers.get("X-Forwarded-For", "")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
    return request.remote_addr or "unknown"


def text_response(status: int, message: str, *, retry_after: Optional[int] = None) -> Response:
    resp = make_response(message, status)
    resp.headers["Content-Type"] = TEXT_CONTENT_TYPE
    resp.headers["Cache-Control"] = "no-store"
    if retry_after is not None:
        resp.headers["Retry-After"] = str(retry_after)
    return resp


def calendar_response(content: str, *, max_age: int, cache_status: str) -> Response:
    resp = make_response(content, 200)
    resp.headers["Content-Type"] = CALENDAR_CONTENT_TYPE
    resp.headers["Cache-Control"] = f"public, max-age={max_age}"
    resp.headers["X-Cache"] = cache_status
    return resp


def admit_request() -> Optional[Response]:
    """Rate limit per client, then wait for a concurrency slot."""
    state = get_state()
    client_ip = get_client_ip()
    allowed, retry_after = state.rate_limiter.allow(client_ip)
    if not allowed:
        log.warning("Rate limited %s on %s", client_ip, request.path)
        return text_response(429, "Too many requests", retry_after=retry_after)

    if not state.concurrency.acquire(state.queue_timeout_sec):
        log.warning("No free request slot for %s within %.1fs", client_ip, state.queue_timeout_sec)
        return text_response(503, "Server busy", retry_after=1)
    g.holds_request_slot = True
    return None


def release_request_slot(exc: Optional[BaseException]) -> None:
    # Runs on every exit path; the flag keeps the release to exactly one.
    if g.pop("holds_request_slot", False):
        get_state().concurrency.release()


def add_common_headers(resp: Response) -> Response:
    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("Referrer-Policy", "no-referrer")
    resp.headers.setdefault("X-Frame-Options", "DENY")

    if ENABLE_HSTS and request.is_secure:
        resp.headers.setdefault(
            "Strict-Transport-Security",
            f"max-age={HSTS_MAX_AGE_SEC}; includeSubDomains",
        )
    return resp


def serve_calendar(state: AppState, train_name: str) -> Response:
    line_id = strip_format_suffix(train_name)
    if not is_valid_line(line_id):
        return text_response(400, invalid_line_message(line_id))

    entry = state.cache.get_entry(line_id)
    if entry is not None:
        log.info("Cache hit for train: %s", line_id)
        return calendar_response(
            entry.content, max_age=state.cache.seconds_left(entry), cache_status="HIT"
        )

    log.info("Cache miss - fetching calendar for train: %s", line_id)
    try:
        content = state.fetch_calendar(line_id)
    except UpstreamError as exc:
        log.error("Error generating calendar for %s: %s", line_id, exc)
        return text_response(500, f"Error generating calendar: {exc}")
    except Exception:
        log.exception("Unexpected error generating calendar for %s", line_id)
        return text_response(500, "Error generating calendar: unexpected error")

    entry = state.cache.put(line_id, content)
    return calendar_response(
        content, max_age=state.cache.seconds_left(entry), cache_status="MISS"
    )


def index() -> str:
    return render_template("index.html", lines=VALID_LINES, colors=LINE_COLORS)


def healthz() -> Response:
    return text_response(200, "ok")


def train_calendar(train_name: str) -> Response:
    return serve_calendar(get_state(), train_name)


def create_app(state: Optional[AppState] = None) -> Flask:
    flask_app = Flask(__name__)
    flask_app.extensions[STATE_KEY] = state or build_state()

    flask_app.before_request(admit_request)
    flask_app.teardown_request(release_request_slot)
    flask_app.after_request(add_common_headers)

    flask_app.add_url_rule("/", "index", index)
    flask_app.add_url_rule("/healthz", "healthz", healthz)
    flask_app.add_url_rule("/api/calendars/train/<train_name>", "train_calendar", train_calendar)
    return flask_app


app = create_app()


def main() -> None:
    log.info("Server running on http://%s:%d", APP_HOST, APP_PORT)
    log.info(
        "Rate limit: %g req/s per IP (burst %d), %gs cache, max %d concurrent requests",
        RATE_LIMIT_PER_SEC,
        RATE_LIMIT_BURST,
        CACHE_TTL_SEC,
        MAX_CONCURRENT_REQUESTS,
    )
    log.info("Example: http://localhost:%d/api/calendars/train/A.ics", APP_PORT)
    app.run(host=APP_HOST, port=APP_PORT, threaded=True)


if __name__ == "__main__":
    main()
