"""Server settings, read from the environment and overridable from the command line."""
import os
from pathlib import Path
from typing import Literal, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

PermissionMode = Literal["default", "acceptEdits", "bypassPermissions", "plan"]


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip() == "1"


class Settings(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False
    # Explicit CLI path; None means auto-detect from PATH.
    claude_path: Optional[str] = None
    rules_path: Path = Field(default_factory=lambda: Path.cwd() / "RULES.md")
    default_project_path: Optional[str] = None
    api_key: Optional[str] = None
    allow_bypass_permissions: bool = False
    rate_limit_chat: str = "20/minute"
    rate_limit_enabled: bool = True
    turn_timeout_seconds: Optional[float] = None

    @field_validator("turn_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("turn_timeout_seconds must be positive")
        return v

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        values: dict = {
            "debug": _flag(env.get("DEBUG"), False),
            "allow_bypass_permissions": _flag(env.get("ALLOW_BYPASS_PERMISSIONS"), False),
            "rate_limit_enabled": _flag(env.get("RATE_LIMIT_ENABLED"), True),
        }
        for field_name, key in (
            ("host", "HOST"),
            ("port", "PORT"),
            ("claude_path", "CLAUDE_PATH"),
            ("rules_path", "RULES_PATH"),
            ("default_project_path", "DEFAULT_PROJECT_PATH"),
            ("api_key", "API_KEY"),
            ("rate_limit_chat", "RATE_LIMIT_CHAT"),
            ("turn_timeout_seconds", "TURN_TIMEOUT_SECONDS"),
        ):
            raw = (env.get(key) or "").strip()
            if raw:
                values[field_name] = raw
        return cls(**values)
