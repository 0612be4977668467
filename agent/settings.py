"""Runtime configuration.

Values come from, in order of precedence:

1. the process environment
2. ``~/.threadloom/.env`` (or ``$THREADLOOM_HOME/.env``), then a project ``.env``
3. ``~/.threadloom/config.yaml``, bridged into the environment for keys
   that are still unset

``load_environment()`` does the file loading; ``load_settings()`` reads the
resulting environment into a frozen ``Settings``. Tests pass an explicit
mapping to ``load_settings`` and never touch the filesystem.
"""

import logging
import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional, Tuple

import yaml
from dotenv import load_dotenv

from threadloom_constants import (
    AIDE_DEFAULT_BASE_URL,
    DEFAULT_HEADROOM,
    DEFAULT_TOKEN_BUDGET,
    MAX_TOOL_STEPS,
    OPENAI_BASE_URL,
    SUMMARIZE_MESSAGE_THRESHOLD,
    SUMMARIZE_TOKEN_THRESHOLD,
)

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = 120.0

# config.yaml section -> env var prefix
_YAML_SECTION_ENV = {
    "mcp_repo": {
        "enabled": "MCP_REPO_ENABLED",
        "cmd": "MCP_REPO_CMD",
        "args": "MCP_REPO_ARGS",
        "cwd": "MCP_REPO_CWD",
    },
    "aide": {
        "base_url": "AIDE_BASE_URL",
        "use_case_id": "AIDE_USE_CASE_ID",
        "solma_id": "AIDE_SOLMA_ID",
    },
}


def threadloom_home() -> Path:
    return Path(os.getenv("THREADLOOM_HOME", Path.home() / ".threadloom"))


def _load_env_file(path: Path) -> None:
    try:
        load_dotenv(path, encoding="utf-8")
    except UnicodeDecodeError:
        load_dotenv(path, encoding="latin-1")


def _bridge_yaml(config_path: Path) -> None:
    try:
        with open(config_path, encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Could not read %s: %s", config_path, e)
        return
    if not isinstance(cfg, dict):
        logger.warning("%s is not a mapping; ignoring", config_path)
        return

    for key, val in cfg.items():
        if isinstance(val, (str, int, float, bool)) and key not in os.environ:
            os.environ[key] = str(val)

    for section, env_map in _YAML_SECTION_ENV.items():
        section_cfg = cfg.get(section)
        if not isinstance(section_cfg, dict):
            continue
        for cfg_key, env_var in env_map.items():
            if cfg_key not in section_cfg or env_var in os.environ:
                continue
            val = section_cfg[cfg_key]
            if isinstance(val, list):
                val = shlex.join(str(v) for v in val)
            os.environ[env_var] = str(val)
        if section == "mcp_repo" and isinstance(section_cfg.get("env"), dict):
            for k, v in section_cfg["env"].items():
                os.environ.setdefault(f"MCP_REPO_ENV_{k}", str(v))


def load_environment(home: Optional[Path] = None) -> None:
    """Populate ``os.environ`` from .env files and config.yaml."""
    home = home or threadloom_home()
    env_path = home / ".env"
    if env_path.exists():
        _load_env_file(env_path)
    load_dotenv()
    config_path = home / "config.yaml"
    if config_path.exists():
        _bridge_yaml(config_path)


@dataclass(frozen=True)
class Settings:
    openai_api_key: Optional[str] = None
    openai_base_url: str = OPENAI_BASE_URL
    google_api_key: Optional[str] = None
    aide_api_key: Optional[str] = None
    aide_base_url: str = AIDE_DEFAULT_BASE_URL
    aide_use_case_id: Optional[str] = None
    aide_solma_id: Optional[str] = None
    aide_entra_tenant_id: Optional[str] = None
    aide_entra_client_id: Optional[str] = None
    aide_entra_client_secret: Optional[str] = None
    aide_entra_scope: Optional[str] = None
    default_model: Optional[str] = None
    token_budget: int = DEFAULT_TOKEN_BUDGET
    headroom: int = DEFAULT_HEADROOM
    summarize_token_threshold: int = SUMMARIZE_TOKEN_THRESHOLD
    summarize_message_threshold: int = SUMMARIZE_MESSAGE_THRESHOLD
    max_tool_steps: int = MAX_TOOL_STEPS
    http_timeout: float = DEFAULT_HTTP_TIMEOUT

    @property
    def entra_configured(self) -> bool:
        return all((
            self.aide_entra_tenant_id,
            self.aide_entra_client_id,
            self.aide_entra_client_secret,
            self.aide_entra_scope,
        ))


def _str(environ: Mapping[str, str], key: str) -> Optional[str]:
    val = environ.get(key)
    if val is None:
        return None
    val = val.strip()
    return val or None


def _int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = _str(environ, key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%r; using default %s", key, raw, default)
        return default


def _float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = _str(environ, key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid number for %s=%r; using default %s", key, raw, default)
        return default


def _max_steps(environ: Mapping[str, str]) -> int:
    steps = _int(environ, "THREADLOOM_MAX_STEPS", MAX_TOOL_STEPS)
    if not 1 <= steps <= MAX_TOOL_STEPS:
        logger.warning("THREADLOOM_MAX_STEPS=%s outside 1..%d; clamping", steps, MAX_TOOL_STEPS)
        steps = max(1, min(steps, MAX_TOOL_STEPS))
    return steps


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    environ = os.environ if environ is None else environ
    return Settings(
        openai_api_key=_str(environ, "OPENAI_API_KEY"),
        openai_base_url=_str(environ, "OPENAI_BASE_URL") or OPENAI_BASE_URL,
        google_api_key=_str(environ, "GOOGLE_API_KEY"),
        aide_api_key=_str(environ, "AIDE_API_KEY"),
        aide_base_url=(_str(environ, "AIDE_BASE_URL") or AIDE_DEFAULT_BASE_URL).rstrip("/"),
        aide_use_case_id=_str(environ, "AIDE_USE_CASE_ID"),
        aide_solma_id=_str(environ, "AIDE_SOLMA_ID"),
        aide_entra_tenant_id=_str(environ, "AIDE_ENTRA_TENANT_ID"),
        aide_entra_client_id=_str(environ, "AIDE_ENTRA_CLIENT_ID"),
        aide_entra_client_secret=_str(environ, "AIDE_ENTRA_CLIENT_SECRET"),
        aide_entra_scope=_str(environ, "AIDE_ENTRA_SCOPE"),
        default_model=_str(environ, "THREADLOOM_DEFAULT_MODEL"),
        token_budget=_int(environ, "THREADLOOM_TOKEN_BUDGET", DEFAULT_TOKEN_BUDGET),
        headroom=_int(environ, "THREADLOOM_HEADROOM", DEFAULT_HEADROOM),
        summarize_token_threshold=_int(
            environ, "THREADLOOM_SUMMARIZE_TOKENS", SUMMARIZE_TOKEN_THRESHOLD),
        summarize_message_threshold=_int(
            environ, "THREADLOOM_SUMMARIZE_MESSAGES", SUMMARIZE_MESSAGE_THRESHOLD),
        max_tool_steps=_max_steps(environ),
        http_timeout=_float(environ, "THREADLOOM_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT),
    )


def validate_settings(settings: Settings) -> List[Tuple[str, bool, str]]:
    """Check provider credentials and tool server setup.

    Returns:
        List of (name, ok, message) tuples
    """
    results = []

    def key_row(name: str, value: Optional[str], feature: str):
        if value:
            results.append((name, True, f"{feature} configured"))
        else:
            results.append((name, False, "Not set"))

    key_row("OPENAI_API_KEY", settings.openai_api_key, "OpenAI")
    key_row("GOOGLE_API_KEY", settings.google_api_key, "Google Gemini")

    if settings.aide_api_key:
        results.append(("AIDE_API_KEY", True, "AIDE static token configured"))
    elif settings.entra_configured:
        results.append(("AIDE_API_KEY", True, "AIDE token via Entra ID client credentials"))
    else:
        results.append(("AIDE_API_KEY", False, "Not set (and Entra ID credentials incomplete)"))
    for name, value in (("AIDE_USE_CASE_ID", settings.aide_use_case_id),
                        ("AIDE_SOLMA_ID", settings.aide_solma_id)):
        results.append((name, bool(value), "Set" if value else "Not set (required for AIDE)"))

    if not (settings.openai_api_key or settings.google_api_key
            or settings.aide_api_key or settings.entra_configured):
        results.append(("INFERENCE_PROVIDER", False,
                        "No provider credentials. Set GOOGLE_API_KEY, OPENAI_API_KEY or AIDE_API_KEY"))

    if settings.headroom >= settings.token_budget:
        results.append(("THREADLOOM_HEADROOM", False,
                        f"headroom {settings.headroom} >= budget {settings.token_budget}; "
                        "history will always be empty"))

    mcp_cmd = os.environ.get("MCP_REPO_CMD")
    if mcp_cmd:
        results.append(("MCP_REPO_CMD", True, f"Repository tools via '{mcp_cmd}'"))
    else:
        results.append(("MCP_REPO_CMD", False, "Not set (repository tools disabled)"))

    return results
