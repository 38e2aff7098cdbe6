import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

LOG_NAME = "image_service"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

repo_dir = os.path.dirname(os.path.abspath(__file__))
env_path = os.path.join(repo_dir, ".env")

DEFAULT_PORT = 3000
DEFAULT_SCRATCH_DIR = os.path.join(repo_dir, "files")
DEFAULT_FETCH_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_DOWNLOAD_BYTES = 50 * 1024 * 1024
DEFAULT_MAX_OUTPUT_PIXELS = 100_000_000


class ServiceConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = Field(default=DEFAULT_PORT, gt=0, lt=65536)
    log_level: str = "INFO"
    log_file: Optional[str] = None
    scratch_dir: Path = Path(DEFAULT_SCRATCH_DIR)
    fetch_timeout_seconds: float = Field(default=DEFAULT_FETCH_TIMEOUT_SECONDS, gt=0)
    max_download_bytes: int = Field(default=DEFAULT_MAX_DOWNLOAD_BYTES, gt=0)
    max_output_pixels: int = Field(default=DEFAULT_MAX_OUTPUT_PIXELS, gt=0)

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value):
        candidate = str(value or "INFO").strip().upper()
        if not isinstance(logging.getLevelName(candidate), int):
            raise ValueError(f"Unknown log level '{value}'.")
        return candidate

    @field_validator("log_file", mode="before")
    @classmethod
    def _empty_log_file(cls, value):
        if value in (None, ""):
            return None
        return value


def load_config(dotenv_path: Optional[str] = env_path) -> ServiceConfig:
    """Build the service configuration from the environment.

    A ``.env`` file next to this module is read first without overriding
    variables already present in the process environment.
    """
    if dotenv_path and os.path.exists(dotenv_path):
        load_dotenv(dotenv_path=dotenv_path, override=False)

    values = {
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "log_level": os.getenv("LOG_LEVEL"),
        "log_file": os.getenv("LOG_FILE"),
        "scratch_dir": os.getenv("SCRATCH_DIR"),
        "fetch_timeout_seconds": os.getenv("FETCH_TIMEOUT_SECONDS"),
        "max_download_bytes": os.getenv("MAX_DOWNLOAD_BYTES"),
        "max_output_pixels": os.getenv("MAX_OUTPUT_PIXELS"),
    }
    return ServiceConfig(**{key: value for key, value in values.items() if value is not None})


def configure_logging(config: ServiceConfig) -> logging.Logger:
    logger = logging.getLogger(LOG_NAME)
    logger.setLevel(config.log_level)
    if not logger.handlers:
        formatter = logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT)
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        if config.log_file:
            file_handler = logging.FileHandler(config.log_file)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        logger.propagate = False
    return logger
