from __future__ import annotations

import argparse
import hashlib
import html
import json
import re
import sys
import urllib.request
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable

import markdown
import yaml

from date_resolver import resolve_date_phrase

DEFAULT_SOURCE_URL = "https://raw.githubusercontent.com/Everything-Open-Source/open-source-events/main/README.md"
DEFAULT_CALENDAR_NAME = "Open Source Events"
DEFAULT_UID_DOMAIN = "opensourceevents.com"
DEFAULT_YEAR_HEADING = "open source events"
DEFAULT_USER_AGENT = "ose-calendar/1.0"

EVENT_RE = re.compile(
    r"- \[(.*?)\]\((.*?)\)\n\s*> Date: (.*?) \|\| Mode: (.*?) \|\| Location: (.*?)\."
)


@dataclass(frozen=True)
class EventEntry:
    name: str
    url: str
    date_text: str
    mode: str
    location: str


@dataclass(frozen=True)
class Event:
    name: str
    url: str
    start_date: date
    end_date: date
    mode: str
    location: str
    original_date: str


def load_config(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    return data if isinstance(data, dict) else {}


def resolve_config_path(value: object, base_dir: Path) -> Path | None:
    if value is None:
        return None
    path = Path(str(value))
    return path if path.is_absolute() else base_dir / path


def read_source_text(source: str, user_agent: str = DEFAULT_USER_AGENT, timeout: float = 20) -> str:
    if source.startswith("http://") or source.startswith("https://"):
        request = urllib.request.Request(
            source,
            headers={"User-Agent": user_agent},
        )
        with urllib.request.urlopen(request, timeout=timeout) as response:
            if response.status != 200:
                raise RuntimeError(f"Failed to fetch from {source}: {response.status}")
            return response.read().decode("utf-8", errors="ignore")
    return Path(source).read_text(encoding="utf-8")


def detect_document_year(text: str, heading: str = DEFAULT_YEAR_HEADING) -> int | None:
    """Find the year the listing is written for.

    The heading line (e.g. "Open Source Events 2025") wins; otherwise the first
    standalone 20xx anywhere in the document is used.
    """
    heading_match = re.search(rf"{re.escape(heading)}.*?(20\d{{2}})", text, re.IGNORECASE)
    if heading_match:
        return int(heading_match.group(1))
    year_match = re.search(r"\b20\d{2}\b", text)
    if year_match:
        return int(year_match.group(0))
    return None


def extract_event_entries(text: str) -> list[EventEntry]:
    clean_text = text.replace("\r\n", "\n")
    return [
        EventEntry(
            name=match.group(1),
            url=match.group(2),
            date_text=match.group(3),
            mode=match.group(4),
            location=match.group(5),
        )
        for match in EVENT_RE.finditer(clean_text)
    ]


def build_events(
    entries: Iterable[EventEntry],
    year: int,
    debug: bool = False,
) -> tuple[list[Event], int]:
    events: list[Event] = []
    skipped = 0
    for entry in entries:
        start_date, end_date = resolve_date_phrase(entry.date_text, year)
        if start_date is None or end_date is None:
            print(f"Warning: unable to parse date '{entry.date_text}' for event '{entry.name}'. Skipping.")
            skipped += 1
            continue
        if debug:
            print(f"{entry.name}: '{entry.date_text}' -> {start_date} until {end_date}")
        events.append(
            Event(
                name=entry.name,
                url=entry.url,
                start_date=start_date,
                end_date=end_date,
                mode=entry.mode,
                location=entry.location,
                original_date=entry.date_text,
            )
        )
    # Stable sort keeps listing order for events starting the same day.
    events.sort(key=lambda e: e.start_date)
    return events, skipped


def event_record(event: Event) -> dict[str, str]:
    return {
        "name": event.name,
        "url": event.url,
        "start_date": event.start_date.isoformat(),
        "end_date": event.end_date.isoformat(),
        "mode": event.mode,
        "location": event.location,
        "original_date": event.original_date,
    }


def make_uid(event: Event, domain: str = DEFAULT_UID_DOMAIN) -> str:
    key = f"{event.name}|{event.url}|{event.start_date.isoformat()}"
    digest = hashlib.sha1(key.encode("utf-8")).hexdigest()
    return f"{digest[:16]}@{domain}"


def ics_escape(s: str) -> str:
    """Escape text per RFC 5545."""
    if not s:
        return ""
    s = s.replace("\\", "\\\\").replace(";", r"\;").replace(",", r"\,")
    return s.replace("\r\n", "\\n").replace("\n", "\\n")


def fold_ics_line(line: str) -> str:
    """Fold a content line at 75 octets, continuation lines start with a space.

    Folds fall between characters so a UTF-8 sequence is never split.
    """
    max_octets = 75
    if len(line.encode("utf-8")) <= max_octets:
        return line
    parts = []
    current = ""
    size = 0
    for char in line:
        char_size = len(char.encode("utf-8"))
        if size + char_size > max_octets:
            parts.append(current)
            current = " "
            size = 1
        current += char
        size += char_size
    parts.append(current)
    return "\r\n".join(parts)


def format_ics_datetime(value: date) -> str:
    return value.strftime("%Y%m%d") + "T000000Z"


def build_ics(
    events: list[Event],
    calendar_name: str = DEFAULT_CALENDAR_NAME,
    uid_domain: str = DEFAULT_UID_DOMAIN,
    stamp: date | None = None,
) -> str:
    stamp = stamp or datetime.now(timezone.utc).date()
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Open Source Events//EN",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
        f"X-WR-CALNAME:{ics_escape(calendar_name)}",
    ]

    uid_counts: dict[str, int] = {}
    for event in events:
        uid = make_uid(event, uid_domain)
        uid_counts[uid] = uid_counts.get(uid, 0) + 1
        if uid_counts[uid] > 1:
            uid = uid.replace("@", f"-{uid_counts[uid]}@", 1)
        description = "\\n".join(
            [
                f"Mode: {ics_escape(event.mode)}",
                f"Location: {ics_escape(event.location)}",
                f"URL: {ics_escape(event.url)}",
            ]
        )
        lines.extend(
            [
                "BEGIN:VEVENT",
                f"UID:{uid}",
                f"DTSTAMP:{format_ics_datetime(stamp)}",
                f"DTSTART:{format_ics_datetime(event.start_date)}",
                f"DTEND:{format_ics_datetime(event.end_date)}",
                f"SUMMARY:{ics_escape(event.name)}",
                f"DESCRIPTION:{description}",
                f"URL:{event.url}",
                f"LOCATION:{ics_escape(event.location)}",
                "END:VEVENT",
            ]
        )

    lines.append("END:VCALENDAR")
    return "\r\n".join(fold_ics_line(line) for line in lines) + "\r\n"


def load_existing_records(path: Path) -> list[dict[str, object]] | None:
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        return None  # If we can't parse it, start fresh
    return data if isinstance(data, list) else None


def json_data_changed(new_data: list[dict[str, str]], existing_data: list[dict[str, object]] | None) -> bool:
    if existing_data is None:
        return True
    return new_data != existing_data


def _without_dtstamp(ics: str) -> list[str]:
    return [line for line in ics.split("\r\n") if not line.startswith("DTSTAMP:")]


def ics_data_changed(new_ics: str, existing_ics: str | None) -> bool:
    """Check if the feed has changed, ignoring the DTSTAMP run date."""
    if existing_ics is None:
        return True
    return _without_dtstamp(new_ics) != _without_dtstamp(existing_ics)


def _markdown_cell(value: str) -> str:
    return html.escape(value, quote=False).replace("|", "\\|")


def build_index_html(output_dir: Path, events: list[Event], calendar_name: str = DEFAULT_CALENDAR_NAME) -> None:
    """Build an index.html page with subscription links and the event table."""
    rows = [
        "| Event | Dates | Mode | Location |",
        "| --- | --- | --- | --- |",
    ]
    for event in events:
        last_day = event.end_date - timedelta(days=1)
        if last_day == event.start_date:
            dates = event.start_date.isoformat()
        else:
            dates = f"{event.start_date.isoformat()} to {last_day.isoformat()}"
        rows.append(
            f"| [{_markdown_cell(event.name)}]({event.url}) | {dates} "
            f"| {_markdown_cell(event.mode)} | {_markdown_cell(event.location)} |"
        )

    md = markdown.Markdown(extensions=["tables"])
    table_html = md.convert("\n".join(rows))
    title = html.escape(calendar_name)

    page = f"""<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>{title}</title>
</head>
<body>
<h1>{title}</h1>
<p>Subscribe: <a href="events.ics">events.ics</a> &middot; Data: <a href="events.json">events.json</a></p>
{table_html}
</body>
</html>
"""
    (output_dir / "index.html").write_text(page, encoding="utf-8")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Build JSON and iCal feeds from the open source events listing."
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="YAML config file (optional, default: ./config.yaml)",
    )
    parser.add_argument(
        "--source",
        default=None,
        help="Source URL or path to the markdown listing",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Directory to write outputs (default: current directory)",
    )
    parser.add_argument(
        "--year",
        type=int,
        default=None,
        help="Year to assume for dates without one (default: detected from the listing)",
    )
    parser.add_argument(
        "--calendar-name",
        default=None,
        help="Calendar name shown by subscribing clients",
    )
    parser.add_argument(
        "--skip-index",
        action="store_true",
        help="Do not write index.html",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Rewrite outputs even if the events are unchanged",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Print each resolved date phrase",
    )
    args = parser.parse_args(argv)

    config = load_config(args.config) if args.config else {}
    config_base = args.config.parent if args.config else Path.cwd()
    source = str(args.source or config.get("source_url", DEFAULT_SOURCE_URL))
    output_dir = args.output_dir or resolve_config_path(config.get("output_dir"), config_base) or Path.cwd()
    calendar_name = str(args.calendar_name or config.get("calendar_name", DEFAULT_CALENDAR_NAME))
    uid_domain = str(config.get("uid_domain", DEFAULT_UID_DOMAIN))
    year_heading = str(config.get("year_heading", DEFAULT_YEAR_HEADING))
    user_agent = str(config.get("user_agent", DEFAULT_USER_AGENT))
    timeout = float(config.get("timeout", 20))
    write_index = not args.skip_index and bool(config.get("index_html", True))
    debug = args.debug or bool(config.get("debug", False))

    try:
        source_text = read_source_text(source, user_agent=user_agent, timeout=timeout)
    except (OSError, RuntimeError) as exc:
        print(f"Error: failed to read {source}: {exc}", file=sys.stderr)
        return 1

    year = args.year or config.get("year")
    if year:
        year = int(year)
    else:
        year = detect_document_year(source_text, year_heading)
        if year is None:
            year = datetime.now(timezone.utc).year
            print(f"No year detected; defaulting to current year: {year}")
        else:
            print(f"Detected event year: {year}")

    entries = extract_event_entries(source_text)
    events, skipped = build_events(entries, year, debug=debug)
    if not events:
        print("Error: no events were parsed from the listing. Check date formats.", file=sys.stderr)
        return 1

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    json_path = output_dir / "events.json"
    ics_path = output_dir / "events.ics"
    index_path = output_dir / "index.html"

    records = [event_record(event) for event in events]
    existing_records = load_existing_records(json_path)
    ics_text = build_ics(events, calendar_name, uid_domain)
    existing_ics = ics_path.read_bytes().decode("utf-8", errors="replace") if ics_path.exists() else None
    print(f"Parsed {len(events)} events ({skipped} skipped)")

    # Only rewrite when the output changed so scheduled runs don't churn DTSTAMP.
    changed = (
        args.force
        or json_data_changed(records, existing_records)
        or ics_data_changed(ics_text, existing_ics)
        or (write_index and not index_path.exists())
    )
    if not changed:
        print(f"Events unchanged; outputs in {output_dir} left as they are")
        return 0

    json_path.write_text(json.dumps(records, indent=2) + "\n", encoding="utf-8")
    ics_path.write_bytes(ics_text.encode("utf-8"))
    if write_index:
        build_index_html(output_dir, events, calendar_name)
    print(f"Wrote outputs to {output_dir}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
