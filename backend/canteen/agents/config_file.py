# Overview: Read/write the on-disk POS agent configuration (pos-agent/config.json).

"""
Layout:

    {
      "backendUrl": "http://localhost:8080",
      "agents": [
        {"theaterId": 7, "username": "...", "password": "...", "pin": "1234",
         "label": "Screen 1 counter", "enabled": true}
      ]
    }

Writes go to a temp file in the same directory and are moved into place,
so a reader never sees a half-written file.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path


def agent_entry(*, theater_id: int, username: str, password: str, pin: str | None = None,
                label: str | None = None, enabled: bool = True) -> dict:
    entry = {
        "theaterId": theater_id,
        "username": username,
        "password": password,
        "label": label or f"theater-{theater_id}",
        "enabled": enabled,
    }
    if pin:
        entry["pin"] = pin
    return entry


def write_agent_config(path: str | os.PathLike, *, backend_url: str, agents: list[dict]) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    document = {"backendUrl": backend_url, "agents": agents}

    fd, tmp_name = tempfile.mkstemp(prefix=".config-", suffix=".json", dir=str(target.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, target)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
    return target


def load_agent_config(path: str | os.PathLike) -> dict:
    """Return the parsed config; a missing file reads as an empty config."""
    target = Path(path)
    if not target.exists():
        return {"backendUrl": None, "agents": []}
    with target.open("r", encoding="utf-8") as f:
        document = json.load(f)
    if not isinstance(document, dict):
        raise ValueError(f"{target}: expected a JSON object")
    agents = document.get("agents") or []
    if not isinstance(agents, list):
        raise ValueError(f"{target}: agents must be a list")
    return {"backendUrl": document.get("backendUrl"), "agents": agents}


def find_agent(config: dict, theater_id: int) -> dict | None:
    for entry in config.get("agents", []):
        if str(entry.get("theaterId")) == str(theater_id):
            return entry
    return None
