# backend/config.py
# Environment-driven settings shared by the batch jobs and the API.

import os
import tempfile
from dataclasses import dataclass
from typing import List, Optional

from dotenv import load_dotenv

from engine import JACCARD_THRESHOLD


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class Neo4jSettings:
    uri: str
    username: str
    password: str
    database: Optional[str] = None


def load_env() -> None:
    load_dotenv()


def neo4j_settings() -> Neo4jSettings:
    uri = os.environ.get("NEO4J_URI", "").strip()
    username = os.environ.get("NEO4J_USERNAME", "").strip()
    password = os.environ.get("NEO4J_PASSWORD", "")
    missing = [k for k, v in (("NEO4J_URI", uri), ("NEO4J_USERNAME", username),
                              ("NEO4J_PASSWORD", password)) if not v]
    if missing:
        raise ConfigError(f"Missing Neo4j env vars: {', '.join(missing)}")
    # an empty database name means the server default (AuraDB Free has no "neo4j" db)
    database = os.environ.get("NEO4J_DATABASE", "").strip() or None
    return Neo4jSettings(uri=uri, username=username, password=password, database=database)


def match_threshold() -> float:
    raw = os.environ.get("MATCH_THRESHOLD")
    if raw is None or not raw.strip():
        return JACCARD_THRESHOLD
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"MATCH_THRESHOLD must be a number, got {raw!r}")
    if not 0.0 < value <= 1.0:
        raise ConfigError(f"MATCH_THRESHOLD must be in (0, 1], got {value}")
    return value


def lock_path() -> str:
    return os.environ.get("MATCH_LOCK_PATH") or os.path.join(
        tempfile.gettempdir(), "symbios-compute-matches.lock")


def log_level() -> str:
    return (os.environ.get("LOG_LEVEL") or "INFO").upper()


def frontend_origins() -> List[str]:
    raw = os.environ.get(
        "FRONTEND_ORIGIN",
        "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173",
    )
    return [o.strip() for o in raw.split(",") if o.strip()]
