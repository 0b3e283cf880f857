"""Replay the golden events onto the streams a running pipeline consumes.

Streams come from the settings file, so a deployment with renamed streams gets the
same routing as the publisher. Invalid fixtures are skipped unless asked for; then
they land on the stream their event_type maps to and end up dead-lettered.
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

# Allow running from repo root without installing as a package.
sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from rankflow.contracts.validation import validate_envelope_dict
from rankflow.core.errors import ValidationError
from rankflow.core.message_bus import RedisStreamBus
from rankflow.core.settings import Settings, load_settings


@dataclass(frozen=True)
class ReplayItem:
    name: str
    body: str
    stream: Optional[str]
    skip_reason: str = ""


def plan_replay(root: Path, settings: Settings, *, include_invalid: bool) -> list[ReplayItem]:
    items: list[ReplayItem] = []
    for fp in sorted(root.glob("*.json")):
        raw = fp.read_text(encoding="utf-8")
        ev = json.loads(raw)
        try:
            validate_envelope_dict(ev)
        except ValidationError as e:
            if not include_invalid:
                items.append(ReplayItem(fp.name, raw, None, f"invalid: {e}"))
                continue
        try:
            stream = settings.stream_for(str(ev.get("event_type", "")))
        except ValueError as e:
            items.append(ReplayItem(fp.name, raw, None, f"unroutable: {e}"))
            continue
        items.append(ReplayItem(fp.name, json.dumps(ev, ensure_ascii=False), stream))
    return items


def main() -> None:
    ap = argparse.ArgumentParser(description="Publish golden events onto their Redis streams.")
    ap.add_argument("--config", default=str(Path("config") / "settings.yaml"))
    ap.add_argument("--redis-url", default=None, help="Overrides the URL from the settings file.")
    ap.add_argument("--events-dir", default=str(Path("contracts") / "golden_events" / "v1"))
    ap.add_argument("--dry-run", action="store_true")
    ap.add_argument(
        "--include-invalid",
        action="store_true",
        help="Also publish invalid golden events to exercise dead-lettering.",
    )
    args = ap.parse_args()

    settings = load_settings(args.config)
    items = plan_replay(Path(args.events_dir), settings, include_invalid=args.include_invalid)
    if not items:
        raise SystemExit(f"no golden events found under {args.events_dir}")

    bus = RedisStreamBus(args.redis_url or settings.redis_url)
    published = 0
    for item in items:
        if item.stream is None:
            print(f"[skip] {item.name}: {item.skip_reason}")
        elif args.dry_run:
            print(f"[dry-run] {item.stream} <- {item.name}")
        else:
            message_id = bus.publish_raw(item.stream, item.body)
            published += 1
            print(f"{item.stream} {message_id} <- {item.name}")
    print(f"published {published} of {len(items)}")


if __name__ == "__main__":
    main()
