"""Lora bridge configuration loader."""

import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

# Word characters joined by single hyphens. Project ids become directory and
# tmux session names, where "--" separates extra sessions and "." or ":" are
# target syntax.
PROJECT_ID_PATTERN = r"^[A-Za-z0-9_]+(?:-[A-Za-z0-9_]+)*$"


def valid_project_id(project_id: str) -> bool:
    return re.fullmatch(PROJECT_ID_PATTERN, project_id) is not None


@dataclass
class MultiplexerConfig:
    """Terminal multiplexer and agent process settings."""

    session_prefix: str = "lora-"
    agent_command: str = "claude --dangerously-skip-permissions"
    agent_start_delay: float = 1.5
    capture_lines: int = 100


@dataclass
class ReadinessConfig:
    """Side-channel readiness watcher settings."""

    state_dir: str = "/tmp"
    poll_interval: float = 0.3
    response_timeout: float = 180.0
    background_timeout: float = 1800.0
    reactive: bool = True
    hooks_check_after: float = 10.0
    output_fallback: bool = True


@dataclass
class VoiceConfig:
    """Voice pipeline thresholds and speech provider settings."""

    tts_cooldown: float = 3.0
    min_audio_bytes: int = 15000
    min_words: int = 1
    idle_min_words: int = 3
    recent_output_chars: int = 500
    screenshot_timeout: float = 5.0
    max_working_iterations: int = 3
    min_narration_chars: int = 50
    tts_voice: str = "nova"
    stt_model: str = "whisper-1"
    tts_model: str = "tts-1"


@dataclass
class MemoryConfig:
    """Conversation memory budget."""

    max_context_tokens: int = 200_000
    min_retained_turns: int = 5
    max_facts: int = 20
    chars_per_token: int = 4


def _section(cls: type, data: dict[str, Any] | None) -> Any:
    """Build a section dataclass, ignoring keys it does not know."""
    if not data:
        return cls()
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class BridgeConfig:
    """Main configuration for the Lora bridge."""

    host: str = "0.0.0.0"
    port: int = 8765
    projects_dir: str = "~/lora-projects"
    # Browser origins allowed to call the HTTP API; empty disables CORS
    cors_origins: list[str] = field(default_factory=list)

    multiplexer: MultiplexerConfig = field(default_factory=MultiplexerConfig)
    readiness: ReadinessConfig = field(default_factory=ReadinessConfig)
    voice: VoiceConfig = field(default_factory=VoiceConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)

    # Per-role models
    models: dict[str, str] = field(default_factory=lambda: {
        "decision": "gemini-2.5-flash",
        "summarizer": "gemini-2.5-flash",
        "narrator": "gemini-2.5-flash",
    })

    @classmethod
    def load(cls, config_path: str = ".lora/config.yaml") -> "BridgeConfig":
        """Load config from YAML file.

        Args:
            config_path: Path to config file (relative or absolute)

        Returns:
            Loaded configuration, or defaults when the file is missing
        """
        path = Path(config_path)
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        server = data.get("server", {})
        defaults = cls()
        models = dict(defaults.models)
        models.update(data.get("models", {}) or {})

        return cls(
            host=server.get("host", defaults.host),
            port=server.get("port", defaults.port),
            projects_dir=server.get("projects_dir", defaults.projects_dir),
            cors_origins=list(server.get("cors_origins") or []),
            multiplexer=_section(MultiplexerConfig, data.get("multiplexer")),
            readiness=_section(ReadinessConfig, data.get("readiness")),
            voice=_section(VoiceConfig, data.get("voice")),
            memory=_section(MemoryConfig, data.get("memory")),
            models=models,
        )

    def get_model(self, role: str) -> str:
        """Get model for a specific role.

        Args:
            role: decision, summarizer or narrator

        Returns:
            Model identifier string
        """
        return self.models.get(role, "gemini-2.5-flash")

    def project_path(self, project_id: str) -> Path:
        """Resolve the working directory for a project."""
        return Path(self.projects_dir).expanduser() / project_id

    def canonical_session_name(self, project_id: str) -> str:
        """Deterministic multiplexer session name for a project's first terminal."""
        return f"{self.multiplexer.session_prefix}{project_id}"
