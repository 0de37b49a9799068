# MTA subway alerts feed rendered as one iCalendar document per line.

import datetime
import logging
import os
import random
import time
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from icalendar import Calendar, Event
import requests

from train_cal.env import env_float, env_int
from train_cal.errors import UpstreamError

log = logging.getLogger("train_cal.mta")

MTA_ALERTS_URL = os.getenv(
    "MTA_ALERTS_URL",
    "https://api-endpoint.mta.info/Dataservice/mtagtfsfeeds/camsys%2Fsubway-alerts.json",
)
MTA_API_KEY = os.getenv("MTA_API_KEY")

MTA_CONNECT_TIMEOUT_SEC = env_float("MTA_CONNECT_TIMEOUT_SEC", 3.0)
MTA_READ_TIMEOUT_SEC = env_float("MTA_READ_TIMEOUT_SEC", 10.0)
MTA_MAX_RETRIES = env_int("MTA_MAX_RETRIES", 2)
MTA_BACKOFF_BASE_SEC = env_float("MTA_BACKOFF_BASE_SEC", 0.5)
MTA_BACKOFF_MAX_SEC = env_float("MTA_BACKOFF_MAX_SEC", 6.0)

ALERT_OPEN_ENDED_HOURS = env_int("ALERT_OPEN_ENDED_HOURS", 24)
CALENDAR_PUBLISHED_TTL = "PT15M"
PRODID = "-//NYC Train Cal//MTA Service Alerts//EN"

# Lines whose alerts are published under other GTFS route ids.
ROUTE_ALIASES: Dict[str, Tuple[str, ...]] = {
    "S": ("S", "GS", "FS", "H"),
    "SI": ("SI", "SIR"),
}

JsonDict = Dict[str, Any]

session = requests.Session()


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    # The MTA gateway only sends delay-seconds.
    if value and value.strip().isdigit():
        return int(value.strip())
    return None


def compute_backoff(attempt: int, base: float, maximum: float) -> float:
    delay = min(maximum, base * (2**attempt))
    return delay * (0.7 + random.random() * 0.6)


def request_json(
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    timeout: Optional[Tuple[float, float]] = None,
    max_retries: int = 0,
    backoff_base: float = 0.5,
    backoff_max: float = 6.0,
    service_name: str = "upstream",
) -> Any:
    attempt = 0
    while True:
        try:
            resp = session.get(url, headers=headers, timeout=timeout)
        except requests.RequestException as exc:
            if attempt >= max_retries:
                raise UpstreamError(f"{service_name} request failed", 504) from exc
            log.warning("%s request failed (attempt %d): %s", service_name, attempt + 1, exc)
            time.sleep(compute_backoff(attempt, backoff_base, backoff_max))
            attempt += 1
            continue

        if resp.status_code == 429:
            if attempt >= max_retries:
                raise UpstreamError(f"{service_name} rate limited", resp.status_code)
            retry_after = parse_retry_after(resp.headers.get("Retry-After"))
            delay = (
                min(retry_after, backoff_max)
                if retry_after is not None
                else compute_backoff(attempt, backoff_base, backoff_max)
            )
            time.sleep(delay)
            attempt += 1
            continue

        if 500 <= resp.status_code <= 599:
            if attempt >= max_retries:
                raise UpstreamError(f"{service_name} upstream error", resp.status_code)
            time.sleep(compute_backoff(attempt, backoff_base, backoff_max))
            attempt += 1
            continue

        if resp.status_code >= 400:
            raise UpstreamError(f"{service_name} upstream error", resp.status_code)

        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamError(f"{service_name} invalid JSON", 502) from exc


def fetch_alerts() -> JsonDict:
    headers = {"Accept": "application/json"}
    if MTA_API_KEY:
        headers["x-api-key"] = MTA_API_KEY
    data = request_json(
        MTA_ALERTS_URL,
        headers=headers,
        timeout=(MTA_CONNECT_TIMEOUT_SEC, MTA_READ_TIMEOUT_SEC),
        max_retries=MTA_MAX_RETRIES,
        backoff_base=MTA_BACKOFF_BASE_SEC,
        backoff_max=MTA_BACKOFF_MAX_SEC,
        service_name="MTA",
    )
    if not isinstance(data, dict):
        raise UpstreamError("MTA alerts feed is malformed", 502)
    return data


def route_ids_for(line_id: str) -> Set[str]:
    return set(ROUTE_ALIASES.get(line_id, (line_id,)))


def english_text(translated: Optional[Mapping[str, Any]]) -> str:
    """Pick the plain English translation, falling back to the first one."""
    if not isinstance(translated, Mapping):
        return ""
    fallback = ""
    for item in translated.get("translation") or []:
        if not isinstance(item, Mapping):
            continue
        text = item.get("text") or ""
        if text and item.get("language") in (None, "", "en"):
            return text.strip()
        if text and not fallback:
            fallback = text
    return fallback.strip()


def list_field(obj: Mapping[str, Any], key: str) -> List[Any]:
    value = obj.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise UpstreamError("MTA alerts feed is malformed", 502)
    return value


def alerts_for_line(feed: Mapping[str, Any], line_id: str) -> List[Tuple[str, JsonDict]]:
    routes = route_ids_for(line_id)
    matched: List[Tuple[str, JsonDict]] = []
    for index, entity in enumerate(list_field(feed, "entity")):
        if not isinstance(entity, dict):
            continue
        alert = entity.get("alert")
        if not isinstance(alert, dict):
            continue
        informed = list_field(alert, "informed_entity")
        if any(isinstance(ie, dict) and ie.get("route_id") in routes for ie in informed):
            alert_id = str(entity.get("id") or f"{line_id}-{index}")
            matched.append((alert_id, alert))
    return matched


def to_utc(value: Any) -> Optional[datetime.datetime]:
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    try:
        return datetime.datetime.fromtimestamp(seconds, tz=datetime.timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def build_calendar(
    line_id: str,
    alerts: List[Tuple[str, JsonDict]],
    now: Optional[datetime.datetime] = None,
) -> str:
    stamp = now or datetime.datetime.now(datetime.timezone.utc)
    open_ended = datetime.timedelta(hours=ALERT_OPEN_ENDED_HOURS)

    cal = Calendar()
    cal.add("prodid", PRODID)
    cal.add("version", "2.0")
    cal.add("calscale", "GREGORIAN")
    cal.add("method", "PUBLISH")
    cal.add("x-wr-calname", f"{line_id} Train Service Alerts")
    cal.add("x-published-ttl", CALENDAR_PUBLISHED_TTL)

    for alert_id, alert in alerts:
        summary = english_text(alert.get("header_text")) or f"{line_id} train service change"
        description = english_text(alert.get("description_text"))
        for n, period in enumerate(list_field(alert, "active_period")):
            if not isinstance(period, dict):
                continue
            start = to_utc(period.get("start"))
            if start is None:
                continue
            try:
                end = to_utc(period.get("end")) or start + open_ended
            except OverflowError:
                continue
            if end <= start:
                continue
            event = Event()
            event.add("uid", f"{alert_id}-{n}@nyc-train-cal")
            event.add("dtstamp", stamp)
            event.add("dtstart", start)
            event.add("dtend", end)
            event.add("summary", summary)
            if description:
                event.add("description", description)
            cal.add_component(event)

    return cal.to_ical().decode("utf-8")


def fetch_calendar(line_id: str) -> str:
    feed = fetch_alerts()
    alerts = alerts_for_line(feed, line_id)
    log.info("MTA feed lists %d alert(s) for %s", len(alerts), line_id)
    return build_calendar(line_id, alerts)
