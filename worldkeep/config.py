import json
import shutil
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from worldkeep.durations import parse_duration
from worldkeep.errors import ValidationError

PROJECT_CONFIG = ".worldkeep"
GLOBAL_CONFIG_FILE = Path.home() / ".worldkeep" / "config.json"

DEFAULT_CONFIG = {
    "server_exe": "bedrock_server",
    "server_args": [],
    # Empty means "the directory the server executable lives in"
    "workspace_dir": "",
    "git_exe": "git",
    "git_command_timeout": "30s",
    "git_dry_run": False,
    "save_timeout": "30s",
    "hold_grace": "250ms",
    "poll_interval": "500ms",
    "backup_interval": "30m",
    "start_timeout": "2m",
    "output_line_limit": 100,
    "output_queue_size": 256,
    "audit_log": True,
    "verbose": False,
}


def load_global_config():
    """Load ~/.worldkeep/config.json, shared by every world on this machine."""
    if GLOBAL_CONFIG_FILE.exists():
        try:
            return json.loads(GLOBAL_CONFIG_FILE.read_text())
        except (json.JSONDecodeError, OSError):
            pass
    return {}


def save_global_config(updates):
    """Merge updates into ~/.worldkeep/config.json."""
    existing = load_global_config()
    existing.update(updates)
    GLOBAL_CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    GLOBAL_CONFIG_FILE.write_text(json.dumps(existing, indent=2) + "\n")


def find_config(start=None):
    """Walk up from start (default cwd) to find .worldkeep, like git finds .git."""
    current = Path(start) if start else Path.cwd()
    for parent in [current, *current.parents]:
        config_path = parent / PROJECT_CONFIG
        if config_path.is_file():
            return config_path
    return None


def load_config(start=None):
    # Merge order: defaults → global config → project .worldkeep
    config = {**DEFAULT_CONFIG, **load_global_config()}

    config_path = find_config(start)
    if config_path:
        try:
            raw = json.loads(config_path.read_text())
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {config_path}: {e}")
        config.update(raw)
        # Relative workspace paths are relative to the config file
        ws = config.get("workspace_dir")
        if ws and not Path(ws).is_absolute():
            config["workspace_dir"] = str((config_path.parent / ws).resolve())

    return config


def init_config(path=None, server_exe=None):
    """Create a .worldkeep in the given directory."""
    target = Path(path) if path else Path.cwd()
    config_path = target / PROJECT_CONFIG
    global_cfg = load_global_config()
    init = {
        "server_exe": server_exe or global_cfg.get("server_exe") or DEFAULT_CONFIG["server_exe"],
        "workspace_dir": ".",
        "backup_interval": global_cfg.get("backup_interval") or DEFAULT_CONFIG["backup_interval"],
    }
    config_path.write_text(json.dumps(init, indent=2) + "\n")
    return config_path


def resolve_server_exe(name, cwd=None):
    """Find the server executable: cwd first, then PATH. Returns None if missing."""
    exe = Path(name)
    if exe.is_absolute():
        return exe if exe.exists() else None
    local = Path(cwd or Path.cwd()) / exe
    if local.is_file():
        return local.resolve()
    found = shutil.which(name)
    return Path(found) if found else None


def _duration(config, key):
    try:
        return parse_duration(config[key])
    except ValidationError as e:
        raise ValidationError(f"config key {key!r}: {e}") from e


def _positive_int(config, key):
    value = config[key]
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"config key {key!r} must be a positive integer, got {value!r}")
    return value


@dataclass(frozen=True)
class Settings:
    """Explicit runtime settings handed to the supervisor, store and coordinator."""

    server_exe: str = DEFAULT_CONFIG["server_exe"]
    server_args: tuple = ()
    workspace_dir: Path = field(default_factory=Path.cwd)
    git_exe: str = "git"
    git_command_timeout: timedelta = timedelta(seconds=30)
    git_dry_run: bool = False
    save_timeout: timedelta = timedelta(seconds=30)
    hold_grace: timedelta = timedelta(milliseconds=250)
    poll_interval: timedelta = timedelta(milliseconds=500)
    backup_interval: timedelta = timedelta(minutes=30)
    start_timeout: timedelta = timedelta(minutes=2)
    output_line_limit: int = 100
    output_queue_size: int = 256
    audit_log: bool = True
    verbose: bool = False

    @classmethod
    def from_config(cls, config):
        """Build settings from a merged config dict (see load_config)."""
        config = {**DEFAULT_CONFIG, **(config or {})}

        workspace = config.get("workspace_dir") or ""
        if not workspace:
            exe = resolve_server_exe(config["server_exe"])
            workspace = str(exe.parent) if exe else str(Path.cwd())

        server_args = config.get("server_args") or []
        if isinstance(server_args, str):
            server_args = server_args.split()

        return cls(
            server_exe=str(config["server_exe"]),
            server_args=tuple(server_args),
            workspace_dir=Path(workspace),
            git_exe=str(config["git_exe"]),
            git_command_timeout=_duration(config, "git_command_timeout"),
            git_dry_run=bool(config["git_dry_run"]),
            save_timeout=_duration(config, "save_timeout"),
            hold_grace=_duration(config, "hold_grace"),
            poll_interval=_duration(config, "poll_interval"),
            backup_interval=_duration(config, "backup_interval"),
            start_timeout=_duration(config, "start_timeout"),
            output_line_limit=_positive_int(config, "output_line_limit"),
            output_queue_size=_positive_int(config, "output_queue_size"),
            audit_log=bool(config["audit_log"]),
            verbose=bool(config["verbose"]),
        )
