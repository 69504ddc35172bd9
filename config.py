"""Simple JSON-based config store."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from models import ConciergeConfiguration


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or Path.home() / ".config" / "concierge_chat" / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def get_api_key(self) -> str:
        return str(self._read_all().get("api_key", ""))

    def set_api_key(self, key: str) -> None:
        self._update(api_key=key)

    def get_hotkey(self) -> str:
        return str(self._read_all().get("hotkey", "Key.alt_l"))

    def set_hotkey(self, hotkey: str) -> None:
        self._update(hotkey=hotkey)

    def get_permission_requested(self) -> bool:
        return bool(self._read_all().get("permission_requested", False))

    def set_permission_requested(self, requested: bool) -> None:
        self._update(permission_requested=requested)

    def get_server(self) -> dict[str, Any]:
        data = self._read_all()
        surfaces = data.get("surfaces", [])
        return {
            "server": str(data.get("server", "")),
            "datastream": str(data.get("datastream", "")),
            "ecid": str(data.get("ecid", "")),
            "surfaces": [str(s) for s in surfaces] if isinstance(surfaces, list) else [],
        }

    def set_server(self, server: str, datastream: str, surfaces: list[str], ecid: str = "") -> None:
        self._update(server=server, datastream=datastream, surfaces=list(surfaces), ecid=ecid)

    def get_welcome(self) -> dict[str, Any]:
        data = self._read_all()
        examples = data.get("welcome_examples", [])
        return {
            "heading": str(data.get("welcome_heading", "")),
            "subheading": str(data.get("welcome_subheading", "")),
            "examples": [str(e) for e in examples] if isinstance(examples, list) else [],
        }

    def set_welcome(self, heading: str, subheading: str, examples: list[str]) -> None:
        self._update(welcome_heading=heading, welcome_subheading=subheading, welcome_examples=list(examples))

    def get_session(self) -> tuple[str, float]:
        data = self._read_all()
        try:
            last_activity = float(data.get("session_last_activity", 0.0))
        except (TypeError, ValueError):
            last_activity = 0.0
        return str(data.get("session_id", "")), last_activity

    def set_session(self, session_id: str, last_activity: float) -> None:
        self._update(session_id=session_id, session_last_activity=last_activity)

    def _update(self, **values: Any) -> None:
        data = self._read_all()
        data.update(values)
        self._write_all(data)

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")


def load_configuration(store: JsonConfigStore, speak_voice_responses: bool = True) -> ConciergeConfiguration:
    """Resolve the persisted settings into the value passed to the controller."""
    server = store.get_server()
    welcome = store.get_welcome()
    return ConciergeConfiguration(
        server=server["server"],
        datastream=server["datastream"],
        ecid=server["ecid"],
        surfaces=tuple(server["surfaces"]),
        speak_voice_responses=speak_voice_responses,
        welcome_heading=welcome["heading"],
        welcome_subheading=welcome["subheading"],
        welcome_examples=tuple(welcome["examples"]),
    )
