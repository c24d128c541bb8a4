import os
from typing import Optional


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value else default


class Config:
    SONAR_HOST_URL: str = os.environ.get("GANTRY_SONAR_HOST_URL") or "http://localhost:9000"
    SONAR_TOKEN: Optional[str] = os.environ.get("GANTRY_SONAR_TOKEN")

    GATE_POLL_INTERVAL_SECONDS: float = _env_float("GANTRY_GATE_POLL_INTERVAL", 5.0)
    QUALITY_GATE_TIMEOUT_SECONDS: float = _env_float("GANTRY_QUALITY_GATE_TIMEOUT", 300.0)
    HTTP_TIMEOUT_SECONDS: float = _env_float("GANTRY_HTTP_TIMEOUT", 30.0)

    APPROVAL_HOST: str = os.environ.get("GANTRY_APPROVAL_HOST") or "127.0.0.1"
    APPROVAL_PORT: int = int(os.environ.get("GANTRY_APPROVAL_PORT") or 8765)
    APPROVAL_URL: str = os.environ.get("GANTRY_APPROVAL_URL") or f"http://{APPROVAL_HOST}:{APPROVAL_PORT}"

    LOG_LEVEL: str = os.environ.get("GANTRY_LOG_LEVEL") or "INFO"
    LOG_DIR: Optional[str] = os.environ.get("GANTRY_LOG_DIR")
    OUTPUT_TAIL_LINES: int = int(os.environ.get("GANTRY_OUTPUT_TAIL_LINES") or 200)

    SECRET_ENV_PREFIX: str = "GANTRY_SECRET_"
