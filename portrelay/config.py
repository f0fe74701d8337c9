"""
Config file location, default generation and the json-ish loader.

The config file is plain JSON, but hand-edited files are accepted too:
unquoted keys, // or # line comments, /* block */ comments and trailing
commas are normalized away before parsing.

    {
      debug: false,
      rules: [
        {local_port: 2222, remote_port: 22, remote_host: "10.0.0.5", protocol: "tcp"},
      ],
    }
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

from portrelay.errors import ConfigError
from portrelay.rules import Config

APP_NAME = "portrelay"


def working_dir() -> Path:
    home = os.environ.get("HOME") or "."
    return Path(home) / ".config" / APP_NAME


def default_config_path() -> Path:
    return working_dir() / "config.json"


def default_config_dict() -> Dict[str, Any]:
    return {
        "debug": False,
        "rules": [],
        "logging": {
            "console": {"verbosity": "info"},
            "file": {"enabled": False, "path": f"{APP_NAME}.log", "verbosity": "info"},
        },
    }


def get_path(d: Dict[str, Any], path: str, default: Any = None) -> Any:
    cur: Any = d
    for part in path.split("."):
        if not isinstance(cur, dict):
            return default
        if part not in cur:
            return default
        cur = cur[part]
    return cur


# =============================================================================
# “json-ish” loader (unquoted keys, comments, trailing commas)
# =============================================================================

_KEY_RE = re.compile(r'(?m)(^|\s|[{,])([A-Za-z_][A-Za-z0-9_-]*)(\s*):')
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_LINE_COMMENT_RE = re.compile(r"(?m)^\s*(//|#).*$")
_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)


def jsonish_to_json(text: str) -> str:
    text = _BLOCK_COMMENT_RE.sub("", text)
    text = _LINE_COMMENT_RE.sub("", text)

    def _repl(m: re.Match) -> str:
        prefix, key, suffix = m.group(1), m.group(2), m.group(3)
        return f'{prefix}"{key}"{suffix}:'

    text = _KEY_RE.sub(_repl, text)
    text = _TRAILING_COMMA_RE.sub(r"\1", text)
    return text


def parse_config_text(raw: str, source: str = "<config>") -> Dict[str, Any]:
    try:
        return json.loads(raw)
    except ValueError:
        norm = jsonish_to_json(raw)
        try:
            return json.loads(norm)
        except ValueError as e:
            raise SystemExit(f"Config parse error for {source}:\n{e}\n\nNormalized text:\n{norm}") from e


def load_config(path: Path) -> Config:
    """
    Read and validate the config file. A missing file raises FileNotFoundError;
    any other read or decode failure exits.
    """
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        raise
    except (OSError, UnicodeDecodeError) as e:
        raise SystemExit(f"Cannot read config {path}: {e}") from e
    data = parse_config_text(raw, str(path))
    try:
        return Config.from_dict(data)
    except ConfigError as e:
        raise SystemExit(f"Invalid config {path}: {e}") from e


def ensure_default_config(path: Path) -> Optional[str]:
    """
    Create the config directory with a default config file when the directory
    does not exist yet. Returns a warning string on failure, None otherwise.
    """
    path = Path(path)
    if path.parent.exists():
        return None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(default_config_dict(), indent=2) + "\n", encoding="utf-8")
    except OSError as e:
        return f"could not create config directory {path.parent}: {e}"
    return None
