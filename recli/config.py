"""
Configuration - Recorder configuration management
"""

import os
import json
import socket
import yaml
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


DEFAULT_CONFIG_PATH = Path("~/.recli/config.yaml")
DEFAULT_LOG_DIR = "~/.recli/logs"


def parse_hotkey(value) -> Optional[bytes]:
    """
    Turn a hotkey setting into the control byte it sends.

    Accepts "ctrl+<letter>", "^<letter>", a single control character, or
    "none"/empty to disable the hotkey.
    """
    if value is None:
        return None
    if isinstance(value, bytes):
        return value or None

    text = str(value).strip()
    if not text or text.lower() in ("none", "off", "disabled"):
        return None
    if len(text) == 1 and ord(text) < 0x20:
        return text.encode("ascii")

    lowered = text.lower()
    for prefix in ("ctrl+", "ctrl-", "c-", "^"):
        if lowered.startswith(prefix):
            key = lowered[len(prefix):]
            if len(key) == 1 and ("a" <= key <= "z" or key in "[\\]^_"):
                return bytes([ord(key.upper()) & 0x1F])
    raise ValueError(f"Unsupported hotkey: {value!r}")


@dataclass
class RecliConfig:
    """
    Configuration for the recorder.

    Can be loaded from:
    - YAML file (~/.recli/config.yaml)
    - JSON file
    - Environment variables (RECLI_*)
    - Programmatic defaults
    """

    # Session settings
    host: Optional[str] = None
    log_dir: str = DEFAULT_LOG_DIR
    shell: Optional[str] = None

    # Capture settings
    marker_code: int = 6973
    max_output_bytes: int = 1024 * 1024
    fsync: bool = True
    hotkey: str = "ctrl+x"

    # Heartbeat settings
    heartbeat_enabled: bool = True
    heartbeat_interval_seconds: int = 30

    # Logging settings
    log_level: str = "info"

    @classmethod
    def from_file(cls, path: str) -> "RecliConfig":
        """Load configuration from YAML or JSON file."""
        path = Path(path).expanduser()

        if not path.exists():
            return cls()

        content = path.read_text()

        if path.suffix in ('.yaml', '.yml'):
            data = yaml.safe_load(content)
        elif path.suffix == '.json':
            data = json.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")

        return cls.from_dict(data or {})

    @classmethod
    def from_dict(cls, data: dict) -> "RecliConfig":
        """Create config from dictionary."""
        # Flatten nested structure
        flat = {}

        if 'session' in data:
            flat['host'] = data['session'].get('host')
            flat['log_dir'] = data['session'].get('log_dir', DEFAULT_LOG_DIR)
            flat['shell'] = data['session'].get('shell')

        if 'capture' in data:
            flat['marker_code'] = int(data['capture'].get('marker_code', 6973))
            flat['max_output_bytes'] = int(data['capture'].get('max_output_bytes', 1024 * 1024))
            flat['fsync'] = data['capture'].get('fsync', True)
            flat['hotkey'] = data['capture'].get('hotkey', 'ctrl+x') or 'none'

        if 'heartbeat' in data:
            flat['heartbeat_enabled'] = data['heartbeat'].get('enabled', True)
            flat['heartbeat_interval_seconds'] = int(data['heartbeat'].get('interval_seconds', 30))

        if 'logging' in data:
            flat['log_level'] = data['logging'].get('level', 'info')

        return cls(**flat)

    @classmethod
    def from_env(cls, base: Optional["RecliConfig"] = None) -> "RecliConfig":
        """Overlay RECLI_* environment variables on `base` (or the defaults)."""
        config = base or cls()
        overrides = {
            'host': os.getenv('RECLI_HOST'),
            'log_dir': os.getenv('RECLI_LOG_DIR'),
            'shell': os.getenv('RECLI_SHELL'),
            'hotkey': os.getenv('RECLI_HOTKEY'),
            'log_level': os.getenv('RECLI_LOG_LEVEL'),
        }
        for key, value in overrides.items():
            if value:
                setattr(config, key, value)

        if os.getenv('RECLI_MARKER_CODE'):
            config.marker_code = int(os.environ['RECLI_MARKER_CODE'])
        if os.getenv('RECLI_MAX_OUTPUT_BYTES'):
            config.max_output_bytes = int(os.environ['RECLI_MAX_OUTPUT_BYTES'])
        if os.getenv('RECLI_HEARTBEAT_INTERVAL'):
            config.heartbeat_interval_seconds = int(os.environ['RECLI_HEARTBEAT_INTERVAL'])

        return config

    @classmethod
    def load(cls, path: Optional[str] = None) -> "RecliConfig":
        """Config file (explicit path or the default location), then environment."""
        return cls.from_env(cls.from_file(path or str(DEFAULT_CONFIG_PATH)))

    def to_dict(self) -> dict:
        """Convert config to dictionary."""
        return {
            'session': {
                'host': self.host,
                'log_dir': self.log_dir,
                'shell': self.shell,
            },
            'capture': {
                'marker_code': self.marker_code,
                'max_output_bytes': self.max_output_bytes,
                'fsync': self.fsync,
                'hotkey': self.hotkey,
            },
            'heartbeat': {
                'enabled': self.heartbeat_enabled,
                'interval_seconds': self.heartbeat_interval_seconds,
            },
            'logging': {
                'level': self.log_level,
            },
        }

    def save(self, path: str):
        """Save configuration to file."""
        path = Path(path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.to_dict()

        if path.suffix in ('.yaml', '.yml'):
            content = yaml.dump(data, default_flow_style=False)
        else:
            content = json.dumps(data, indent=2)

        path.write_text(content)

    @property
    def log_root(self) -> Path:
        """Directory holding one subdirectory per session."""
        return Path(self.log_dir).expanduser()

    @property
    def resolved_host(self) -> str:
        return self.host or socket.gethostname()

    @property
    def resolved_shell(self) -> str:
        return self.shell or os.environ.get('SHELL') or '/bin/bash'

    @property
    def hotkey_byte(self) -> Optional[bytes]:
        return parse_hotkey(self.hotkey)
