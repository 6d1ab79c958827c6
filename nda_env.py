from __future__ import annotations

import logging
import os
import re
import sys
from dataclasses import dataclass
from typing import Mapping, MutableMapping, Optional

log = logging.getLogger("nda-gate")

DEFAULT_ENV_PATH = "/etc/tgbots/nda.env"
TOKEN_RE = re.compile(r"^\d+:[A-Za-z0-9_-]+$")


@dataclass(frozen=True)
class Settings:
    bot_token: str
    admin_id: int
    timeout_seconds: int = 60
    ban_minutes: int = 10
    nda_link: str = ""
    log_level: str = "INFO"
    app_version: str = "1.0.0"

    @property
    def ban_seconds(self) -> int:
        return max(0, self.ban_minutes) * 60

    @property
    def token_looks_valid(self) -> bool:
        return bool(TOKEN_RE.match(self.bot_token))


def load_env_file(path: Optional[str] = None, environ: Optional[MutableMapping[str, str]] = None) -> int:
    """Copy KEY=VALUE lines from an env file into the environment; set vars win."""
    env = os.environ if environ is None else environ
    env_path = path or env.get("NDA_ENV_PATH", DEFAULT_ENV_PATH)
    if not os.path.isfile(env_path):
        return 0
    loaded = 0
    try:
        with open(env_path, "r", encoding="utf-8", errors="ignore") as f:
            for raw in f:
                line = raw.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                k, v = line.split("=", 1)
                k = k.strip()
                v = v.strip().strip('"').strip("'")
                if k and k not in env:
                    env[k] = v
                    loaded += 1
    except OSError as e:
        print(f"[BOOT] WARN: cannot load env from {env_path}: {e}", file=sys.stderr)
    return loaded


def _get_env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return int(default)
    try:
        return int(raw.strip())
    except ValueError:
        raise SystemExit(f"ENV {key} must be integer, got: {raw!r}")


def read_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from the environment. Missing token or admin id is fatal."""
    env = os.environ if environ is None else environ
    token = (env.get("TGTOKEN") or env.get("BOT_TOKEN") or "").strip()
    if not token:
        raise SystemExit("TGTOKEN (or BOT_TOKEN) environment variable not set")
    if not (env.get("ADMIN_ID") or "").strip():
        raise SystemExit("ADMIN_ID environment variable not set")
    admin_id = _get_env_int(env, "ADMIN_ID", 0)

    timeout = _get_env_int(env, "NDA_TIMEOUT_SECONDS", 60)
    if timeout <= 0:
        raise SystemExit(f"ENV NDA_TIMEOUT_SECONDS must be positive, got: {timeout}")
    ban_minutes = _get_env_int(env, "BAN_DURATION_MINUTES", 10)
    if ban_minutes < 0:
        raise SystemExit(f"ENV BAN_DURATION_MINUTES must be >= 0, got: {ban_minutes}")

    return Settings(
        bot_token=token,
        admin_id=admin_id,
        timeout_seconds=timeout,
        ban_minutes=ban_minutes,
        nda_link=(env.get("NDA_LINK") or "").strip(),
        log_level=(env.get("LOG_LEVEL") or "INFO").strip().upper(),
        app_version=(env.get("APP_VERSION") or "1.0.0").strip(),
    )


def log_settings(settings: Settings) -> None:
    log.info(
        "BOOT: token_format=%s token_len=%s admin_id=%s timeout=%ss ban=%s link=%s",
        "VALID" if settings.token_looks_valid else "INVALID",
        len(settings.bot_token),
        settings.admin_id,
        settings.timeout_seconds,
        f"{settings.ban_minutes}m" if settings.ban_minutes else "permanent",
        settings.nda_link or "-",
    )
    if not settings.token_looks_valid:
        log.warning("BOOT: bot token does not look like <digits>:<secret>")
