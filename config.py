"""Configuration loader for the wabridge daemon.

Settings come from the environment (optionally seeded from a .env file),
layered over an optional TOML file. Validates values and provides typed
access to all settings.
Immutable after load; no runtime config reloading.
"""

from __future__ import annotations

import logging
import os
import shutil
import sys
import tomllib
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


VOICE_REPLY_MODES = ("auto", "always", "never")
TRANSPORTS = ("evolution", "cli")

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant on WhatsApp. Be concise, direct, and "
    "action-oriented. Do not use heavy markdown (no code blocks, no tables). "
    "Use *bold* and simple lists when needed."
)


def _as_str(raw: str) -> str:
    return raw.strip()


def _as_int(raw: str) -> int:
    return int(raw.strip())


def _as_list(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def _as_flag(raw: str) -> bool:
    # Self-chat is opt-out: only an explicit "false" disables it
    return raw.strip().lower() != "false"


# Environment variable -> (section, key, parser)
_ENV_VARS: dict[str, tuple[str, str, Callable[[str], Any]]] = {
    "WHATSAPP_NUMBERS": ("access", "numbers", _as_list),
    "SELF_CHAT_MODE": ("access", "self_chat", _as_flag),
    "PROJECT_DIR": ("backend", "project_dir", _as_str),
    "CLAUDE_TIMEOUT": ("backend", "timeout", _as_int),
    "CLAUDE_MODEL": ("backend", "model", _as_str),
    "CLAUDE_CLI_PATH": ("backend", "path", _as_str),
    "MAX_TURNS": ("backend", "max_turns", _as_int),
    "SYSTEM_PROMPT": ("backend", "system_prompt", _as_str),
    "CHROME_PATH": ("backend", "chrome_path", _as_str),
    "MAX_HISTORY": ("history", "max_entries", _as_int),
    "HISTORY_DIR": ("paths", "history_dir", _as_str),
    "LOG_DIR": ("paths", "log_dir", _as_str),
    "FILES_DIR": ("paths", "files_dir", _as_str),
    "MEDIA_DIR": ("paths", "media_dir", _as_str),
    "AUTH_DIR": ("paths", "auth_dir", _as_str),
    "STATE_DIR": ("paths", "state_dir", _as_str),
    "ELEVENLABS_API_KEY": ("tts", "api_key", _as_str),
    "ELEVENLABS_VOICE_ID": ("tts", "voice_id", _as_str),
    "ELEVENLABS_MODEL_ID": ("tts", "model_id", _as_str),
    "VOICE_REPLY_MODE": ("tts", "reply_mode", _as_str),
    "FFMPEG_PATH": ("media", "ffmpeg", _as_str),
    "WHISPER_PATH": ("media", "whisper", _as_str),
    "WHISPER_MODEL": ("media", "whisper_model", _as_str),
    "MEDIA_TIMEOUT": ("media", "timeout", _as_int),
    "TRANSCRIBE_TIMEOUT": ("media", "transcribe_timeout", _as_int),
    "WA_TRANSPORT": ("transport", "type", _as_str),
    "EVOLUTION_BASE_URL": ("transport", "base_url", _as_str),
    "EVOLUTION_INSTANCE": ("transport", "instance", _as_str),
    "EVOLUTION_API_KEY": ("transport", "api_key", _as_str),
    "WEBHOOK_HOST": ("transport", "webhook_host", _as_str),
    "WEBHOOK_PORT": ("transport", "webhook_port", _as_int),
    "CHUNK_LIMIT": ("egress", "chunk_limit", _as_int),
}


def _deep_get(d: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if not isinstance(d, dict):
            return default
        d = d.get(key, default)
    return d


def _resolve_path(p: str | Path) -> Path:
    return Path(p).expanduser().resolve()


def _default_chrome_path() -> str:
    if sys.platform == "darwin":
        return "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome"
    if sys.platform == "win32":
        return "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe"
    return "/usr/bin/google-chrome"


def normalize_number(entry: str) -> str:
    """Turn a configured phone number into a WhatsApp JID."""
    entry = entry.strip()
    if "@" in entry:
        return entry
    digits = entry.replace("+", "").replace(" ", "").replace("-", "")
    return f"{digits}@s.whatsapp.net"


class Config:
    """Immutable configuration."""

    def __init__(self, data: dict, base_dir: Path | None = None):
        self._data = data
        self._base_dir = base_dir or Path.cwd()
        self._validate()

    def _validate(self) -> None:
        errors = []
        if self.voice_reply_mode not in VOICE_REPLY_MODES:
            errors.append(
                f"VOICE_REPLY_MODE must be one of {', '.join(VOICE_REPLY_MODES)} "
                f"(got {self.voice_reply_mode!r})"
            )
        if self.transport_type not in TRANSPORTS:
            errors.append(
                f"WA_TRANSPORT must be one of {', '.join(TRANSPORTS)} "
                f"(got {self.transport_type!r})"
            )
        if self.transport_type == "evolution":
            for key, env in (("base_url", "EVOLUTION_BASE_URL"),
                             ("instance", "EVOLUTION_INSTANCE"),
                             ("api_key", "EVOLUTION_API_KEY")):
                if not _deep_get(self._data, "transport", key):
                    errors.append(f"{env} is required for the evolution transport")
        for name, value in (("MAX_HISTORY", self.max_history),
                            ("CLAUDE_TIMEOUT", self.claude_timeout),
                            ("MAX_TURNS", self.max_turns),
                            ("CHUNK_LIMIT", self.chunk_limit),
                            ("MEDIA_TIMEOUT", self.media_timeout),
                            ("TRANSCRIBE_TIMEOUT", self.transcribe_timeout)):
            if not isinstance(value, int) or value <= 0:
                errors.append(f"{name} must be a positive integer (got {value!r})")
        if errors:
            raise ConfigError("Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors))

    def _path(self, key: str, default: str) -> Path:
        raw = Path(_deep_get(self._data, "paths", key, default=default)).expanduser()
        if not raw.is_absolute():
            raw = self._base_dir / raw
        return raw.resolve()

    # --- Access ---

    @property
    def allowed_numbers(self) -> list[str]:
        return [normalize_number(n) for n in _deep_get(self._data, "access", "numbers", default=[])]

    @property
    def self_chat_mode(self) -> bool:
        return _deep_get(self._data, "access", "self_chat", default=True)

    # --- AI backend ---

    @property
    def project_dir(self) -> Path:
        return _resolve_path(_deep_get(self._data, "backend", "project_dir", default=str(self._base_dir)))

    @property
    def claude_timeout(self) -> int:
        return _deep_get(self._data, "backend", "timeout", default=300)

    @property
    def claude_model(self) -> str:
        return _deep_get(self._data, "backend", "model", default="sonnet")

    @property
    def claude_path(self) -> str:
        explicit = _deep_get(self._data, "backend", "path", default="")
        if explicit:
            return explicit
        return shutil.which("claude") or "claude"

    @property
    def max_turns(self) -> int:
        return _deep_get(self._data, "backend", "max_turns", default=25)

    @property
    def system_prompt(self) -> str:
        return _deep_get(self._data, "backend", "system_prompt", default="") or DEFAULT_SYSTEM_PROMPT

    @property
    def chrome_path(self) -> str:
        return _deep_get(self._data, "backend", "chrome_path", default="") or _default_chrome_path()

    # --- History ---

    @property
    def max_history(self) -> int:
        return _deep_get(self._data, "history", "max_entries", default=20)

    # --- Paths ---

    @property
    def history_dir(self) -> Path:
        return self._path("history_dir", "./history")

    @property
    def log_dir(self) -> Path:
        return self._path("log_dir", "./logs")

    @property
    def files_dir(self) -> Path:
        return self._path("files_dir", "./files")

    @property
    def media_dir(self) -> Path:
        return self._path("media_dir", "./audio_tmp")

    @property
    def auth_dir(self) -> Path:
        return self._path("auth_dir", "./auth_info")

    @property
    def state_dir(self) -> Path:
        return self._path("state_dir", "./state")

    @property
    def log_file(self) -> Path:
        return self.log_dir / "agent.log"

    @property
    def log_max_bytes(self) -> int:
        return _deep_get(self._data, "logging", "max_bytes", default=10 * 1024 * 1024)

    @property
    def log_backup_count(self) -> int:
        return _deep_get(self._data, "logging", "backup_count", default=3)

    # --- Speech synthesis ---

    @property
    def tts_api_key(self) -> str:
        return _deep_get(self._data, "tts", "api_key", default="")

    @property
    def tts_voice_id(self) -> str:
        return _deep_get(self._data, "tts", "voice_id", default="")

    @property
    def tts_model_id(self) -> str:
        return _deep_get(self._data, "tts", "model_id", default="") or "eleven_multilingual_v2"

    @property
    def tts_timeout(self) -> int:
        return _deep_get(self._data, "tts", "timeout", default=60)

    @property
    def voice_reply_mode(self) -> str:
        return (_deep_get(self._data, "tts", "reply_mode", default="auto") or "auto").lower()

    # --- Media tools ---

    @property
    def ffmpeg_path(self) -> str:
        return _deep_get(self._data, "media", "ffmpeg", default="") or "ffmpeg"

    @property
    def whisper_path(self) -> str:
        return _deep_get(self._data, "media", "whisper", default="") or "whisper"

    @property
    def whisper_model(self) -> str:
        return _deep_get(self._data, "media", "whisper_model", default="") or "base"

    @property
    def media_timeout(self) -> int:
        return _deep_get(self._data, "media", "timeout", default=30)

    @property
    def transcribe_timeout(self) -> int:
        return _deep_get(self._data, "media", "transcribe_timeout", default=60)

    # --- Transport ---

    @property
    def transport_type(self) -> str:
        return _deep_get(self._data, "transport", "type", default="evolution")

    @property
    def evolution_base_url(self) -> str:
        return _deep_get(self._data, "transport", "base_url", default="").rstrip("/")

    @property
    def evolution_instance(self) -> str:
        return _deep_get(self._data, "transport", "instance", default="")

    @property
    def evolution_api_key(self) -> str:
        return _deep_get(self._data, "transport", "api_key", default="")

    @property
    def webhook_host(self) -> str:
        return _deep_get(self._data, "transport", "webhook_host", default="127.0.0.1")

    @property
    def webhook_port(self) -> int:
        return _deep_get(self._data, "transport", "webhook_port", default=8787)

    @property
    def reconnect_delay(self) -> float:
        return float(_deep_get(self._data, "transport", "reconnect_delay", default=3.0))

    @property
    def max_reconnects(self) -> int:
        return _deep_get(self._data, "transport", "max_reconnects", default=3)

    # --- Egress ---

    @property
    def chunk_limit(self) -> int:
        return _deep_get(self._data, "egress", "chunk_limit", default=4000)


def config_warnings(config: Config) -> list[str]:
    """Non-fatal problems worth reporting at startup."""
    warnings = []
    if not config.allowed_numbers:
        warnings.append(
            "No WHATSAPP_NUMBERS configured; the agent will not respond to anyone."
        )
    if config.claude_path == "claude":
        warnings.append(
            'Using "claude" from PATH. Set CLAUDE_CLI_PATH if this fails.'
        )
    if not config.tts_api_key:
        warnings.append("ElevenLabs not configured; voice responses disabled.")
    elif not config.tts_voice_id:
        warnings.append("ELEVENLABS_VOICE_ID missing; voice responses disabled.")
    return warnings


def _load_dotenv(env_file: Path) -> None:
    """Load a .env file into os.environ without overriding real variables."""
    if not env_file.exists():
        return
    with open(env_file, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, _, val = line.partition("=")
            key = key.strip()
            val = val.strip().strip('"').strip("'")
            # Only set if not already in environment (env takes precedence)
            if key not in os.environ:
                os.environ[key] = val


def _apply_env(data: dict, env: Mapping[str, str]) -> None:
    for env_var, (section, key, parse) in _ENV_VARS.items():
        raw = env.get(env_var)
        if raw is None or raw == "":
            continue
        try:
            value = parse(raw)
        except ValueError as exc:
            raise ConfigError(f"Invalid value for {env_var}: {raw!r}") from exc
        data.setdefault(section, {})[key] = value


def load_config(
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: dict | None = None,
) -> Config:
    """Load and validate configuration.

    Args:
        path: Optional TOML file with the same sections as the environment
              mapping. Its directory also anchors relative paths and .env.
        env: Environment mapping (default: os.environ after .env loading).
        overrides: Dotted-key overrides applied last (e.g. CLI args).
    """
    data: dict = {}
    base_dir = Path.cwd()
    if path is not None:
        p = Path(path).expanduser().resolve()
        if not p.exists():
            raise ConfigError(f"Config file not found: {p}")
        base_dir = p.parent
        with open(p, "rb") as f:
            try:
                data = tomllib.load(f)
            except tomllib.TOMLDecodeError as exc:
                raise ConfigError(f"Invalid TOML in {p}: {exc}") from exc
    if env is None:
        _load_dotenv(base_dir / ".env")
        env = os.environ
    _apply_env(data, env)
    if overrides:
        for key_path, value in overrides.items():
            keys = key_path.split(".")
            d = data
            for k in keys[:-1]:
                d = d.setdefault(k, {})
            d[keys[-1]] = value
    return Config(data, base_dir=base_dir)
