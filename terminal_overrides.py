"""
Manual corrections and extras layered on top of WSF terminal data.

WSF's map links for a handful of terminals point at the wrong place, so a
fixed patch table replaces them by terminal id. Camera lists are not part of
the WSF terminal feed; they come from an optional JSON file shaped like
``{"<terminal id>": [{"id": ..., "title": ..., "url": ...}, ...]}``.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

DEFAULT_TERMINAL_CAMERAS_PATH = Path("config/terminal_cameras.json")

# terminal id -> section -> fields replacing the upstream values
TERMINAL_DATA_OVERRIDES: Dict[int, Dict[str, Dict[str, Any]]] = {
    5: {
        "location": {
            "link": "https://www.google.com/maps/place/Clinton+Ferry+Terminal/@47.9750653,-122.3514909,18.57z/data=!4m8!1m2!2m1!1sclinton+ferry!3m4!1s0x0:0xfc1a9b74eba33fab!8m2!3d47.9751021!4d-122.350086",
        },
    },
    13: {
        "location": {
            "link": "https://www.google.com/maps/place/Lopez+Ferry+Landing/@48.5706056,-122.9007289,14z/data=!4m8!1m2!2m1!1slopez+island+ferry+terminal!3m4!1s0x548581184141c77d:0xb95765067fe72167!8m2!3d48.5706056!4d-122.8834068",
        },
    },
    15: {
        "location": {
            "link": "https://www.google.com/maps/place/Orcas+Island+Ferry+Terminal/@48.597361,-122.9458067,17z/data=!3m1!4b1!4m5!3m4!1s0x548587ff7781be87:0xb6eeeac287820785!8m2!3d48.597361!4d-122.9436127",
        },
    },
    17: {
        "location": {
            "link": "https://www.google.com/maps/place/Port+Townsend+Terminal/@48.1121633,-122.7627137,17z/data=!3m1!4b1!4m5!3m4!1s0x548fedcf67a53163:0xd61a6301e962de31!8m2!3d48.1121633!4d-122.7605197",
        },
    },
    18: {
        "location": {
            "link": "https://www.google.com/maps/place/Shaw+Island+Terminal/@48.584393,-122.9321401,17z/data=!3m1!4b1!4m5!3m4!1s0x548587290b11c709:0xb4bf5a7be8d73b0d!8m2!3d48.584393!4d-122.9299461",
        },
    },
}


def apply_overrides(
    terminal: Dict[str, Any],
    overrides: Optional[Dict[int, Dict[str, Dict[str, Any]]]] = None,
) -> Dict[str, Any]:
    """Patch ``terminal`` in place with the override entry for its id."""
    if overrides is None:
        overrides = TERMINAL_DATA_OVERRIDES
    patch = overrides.get(terminal.get("id"))
    if not patch:
        return terminal
    for section, fields in patch.items():
        current = terminal.get(section)
        if isinstance(current, dict) and isinstance(fields, dict):
            terminal[section] = {**current, **fields}
        else:
            terminal[section] = fields
    return terminal


def load_terminal_cameras(path: Path = DEFAULT_TERMINAL_CAMERAS_PATH) -> Dict[int, List[Dict[str, Any]]]:
    """Load the per-terminal camera list from JSON; missing file means no cameras."""
    cameras: Dict[int, List[Dict[str, Any]]] = {}
    if not path.exists():
        return cameras
    try:
        raw = json.loads(path.read_text())
    except Exception as exc:
        print(f"[terminals] failed to load cameras {path}: {exc}")
        return cameras
    if not isinstance(raw, dict):
        return cameras
    for key, entries in raw.items():
        try:
            terminal_id = int(key)
        except (TypeError, ValueError):
            continue
        if isinstance(entries, list):
            cameras[terminal_id] = [e for e in entries if isinstance(e, dict)]
    return cameras
