"""
Persisted per-connection settings.

A read-only snapshot mapping a canonical "user@host:port" string to options
saved by an earlier session. The on-disk format is JSON:

    {
      "connections": {
        "alice@build:2222": {"identity_files": ["~/.ssh/build_ed25519"]}
      }
    }
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

from sshhop.errors import SSHConfigError
from sshhop.platform import get_ssh_dir
from sshhop.resolver import ConnectionOptions

log = logging.getLogger(__name__)


def get_settings_path() -> Path:
    """Default location of the persisted settings file."""
    return get_ssh_dir() / "sshhop-connections.json"


class ConnectionSettings:
    """Snapshot of saved connection options, keyed by canonical hop name."""

    def __init__(self, connections: Mapping[str, ConnectionOptions] | None = None) -> None:
        self._connections = dict(connections or {})

    @classmethod
    def load(cls, path: Path | str | None = None) -> "ConnectionSettings":
        """
        Load settings from a JSON file.

        A missing file yields an empty snapshot.

        Raises:
            SSHConfigError: If the file is not valid settings JSON
        """
        path = Path(path) if path is not None else get_settings_path()
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            log.debug("No persisted connection settings at %s", path)
            return cls()
        except json.JSONDecodeError as e:
            raise SSHConfigError(
                f"Malformed connection settings: {e.msg}",
                path=str(path),
                line_number=e.lineno,
            ) from e
        except OSError as e:
            raise SSHConfigError(
                f"Cannot read connection settings: {e}", path=str(path),
            ) from e

        return cls.from_dict(raw, source=str(path))

    @classmethod
    def from_dict(cls, raw: Any, source: str | None = None) -> "ConnectionSettings":
        if not isinstance(raw, dict) or not isinstance(raw.get("connections", {}), dict):
            raise SSHConfigError(
                "Connection settings must be an object with a 'connections' object",
                path=source,
            )

        connections: dict[str, ConnectionOptions] = {}
        for name, entry in raw.get("connections", {}).items():
            if not isinstance(entry, dict):
                raise SSHConfigError(
                    f"Settings for {name!r} must be an object", path=source,
                )
            identity_files = entry.get("identity_files", [])
            if not isinstance(identity_files, list) or not all(
                isinstance(p, str) for p in identity_files
            ):
                raise SSHConfigError(
                    f"identity_files for {name!r} must be a list of strings",
                    path=source,
                )
            connections[name] = ConnectionOptions(identity_files=list(identity_files))
        return cls(connections)

    def get(self, name: str) -> ConnectionOptions | None:
        """Return the saved options for a canonical hop name, if any."""
        return self._connections.get(name)

    def __len__(self) -> int:
        return len(self._connections)
