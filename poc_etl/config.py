"""
Configuration module for the PoC ETL.

Reads environment variables and provides configuration values for the
ingest bucket, checkpoint location, document store connection and the
engine's tuning knobs (tick interval, concurrency, recency window).
"""

import json
import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

"""
Loads a .env file next to the package when running locally, so developers can
keep configuration in a file instead of exporting shell variables.
"""

env_path = Path(__file__).parent.parent / ".env"
if env_path.exists():
    load_dotenv(dotenv_path=env_path, override=False)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


class Config:
    """
    Configuration class that reads environment variables for the ETL.
    """

    # S3 Configuration
    S3_BUCKET_NAME: str = os.getenv("S3_BUCKET_NAME", "")
    AWS_REGION: str = os.getenv("AWS_DEFAULT_REGION", "us-east-1")
    INGEST_PREFIX: str = os.getenv("INGEST_PREFIX", "")
    FILE_PREFIX: str = os.getenv("FILE_PREFIX", "iot_poc")
    CHECKPOINT_PREFIX: str = os.getenv("CHECKPOINT_PREFIX", "checkpoints/poc-etl")

    # Document store configuration
    DB_SECRET_ARN: str = os.getenv("DB_SECRET_ARN", "")

    # Engine tuning
    TICK_INTERVAL_SECONDS: int = _env_int("TICK_INTERVAL_SECONDS", 10)
    MAX_CONCURRENT_FILES: int = _env_int("MAX_CONCURRENT_FILES", 16)
    LOAD_BATCH_SIZE: int = _env_int("LOAD_BATCH_SIZE", 600)
    # Look-back for stragglers; also bounds the recent_processed set
    RECENCY_WINDOW_HOURS: int = _env_int("RECENCY_WINDOW_HOURS", 6)

    # Lazy-loaded secrets cache
    _db_secret_cache: Dict[str, Any] = {}

    @classmethod
    def load_env_file(cls, path: str) -> None:
        """
        Load an explicit env file (the CLI's -c option) and re-read settings.

        Args:
            path: Path to a dotenv-formatted file.
        """
        if not os.path.exists(path):
            raise ValueError(f"Config file not found: {path}")
        load_dotenv(dotenv_path=path, override=True)
        cls.refresh()

    @classmethod
    def refresh(cls) -> None:
        """Re-read every environment-driven setting."""
        cls.S3_BUCKET_NAME = os.getenv("S3_BUCKET_NAME", "")
        cls.AWS_REGION = os.getenv("AWS_DEFAULT_REGION", "us-east-1")
        cls.INGEST_PREFIX = os.getenv("INGEST_PREFIX", "")
        cls.FILE_PREFIX = os.getenv("FILE_PREFIX", "iot_poc")
        cls.CHECKPOINT_PREFIX = os.getenv("CHECKPOINT_PREFIX", "checkpoints/poc-etl")
        cls.DB_SECRET_ARN = os.getenv("DB_SECRET_ARN", "")
        cls.TICK_INTERVAL_SECONDS = _env_int("TICK_INTERVAL_SECONDS", 10)
        cls.MAX_CONCURRENT_FILES = _env_int("MAX_CONCURRENT_FILES", 16)
        cls.LOAD_BATCH_SIZE = _env_int("LOAD_BATCH_SIZE", 600)
        cls.RECENCY_WINDOW_HOURS = _env_int("RECENCY_WINDOW_HOURS", 6)
        cls._db_secret_cache = {}

    @classmethod
    def _load_db_secret(cls) -> Dict[str, Any]:
        """
        Retrieve and cache the database secret from AWS Secrets Manager.

        Returns:
            Dict containing the secret payload.
        """
        if not cls._db_secret_cache:
            import boto3

            secrets_client = boto3.client("secretsmanager", region_name=cls.AWS_REGION)
            try:
                response = secrets_client.get_secret_value(SecretId=cls.DB_SECRET_ARN)
                cls._db_secret_cache = json.loads(response["SecretString"])
            except Exception as e:
                raise ValueError(
                    f"Failed to retrieve database secret from Secrets Manager: {e}"
                )
        return cls._db_secret_cache

    @classmethod
    def get_db_connection_details(cls) -> Dict[str, Any]:
        """
        Provide document store connection details.

        Uses the Secrets Manager secret when DB_SECRET_ARN is set, otherwise
        the DB_HOST / DB_PORT / DB_NAME / DB_USER / DB_PASSWORD variables.

        Returns:
            Dict containing host, port, database, user, and password.
        """
        if not cls.DB_SECRET_ARN:
            return {
                "host": os.getenv("DB_HOST", "localhost"),
                "port": _env_int("DB_PORT", 5432),
                "database": os.getenv("DB_NAME", "iot"),
                "user": os.getenv("DB_USER", "postgres"),
                "password": os.getenv("DB_PASSWORD", ""),
            }

        secret = cls._load_db_secret()

        required_keys = ["host", "port", "username", "password"]
        missing_keys = [key for key in required_keys if key not in secret]
        if missing_keys:
            raise ValueError(
                f"Database secret missing required keys: {', '.join(missing_keys)}"
            )

        database_name = secret.get("dbname") or secret.get("database")
        if not database_name:
            raise ValueError("Database secret must include either 'dbname' or 'database'")

        return {
            "host": secret["host"],
            "port": int(secret["port"]),
            "database": database_name,
            "user": secret["username"],
            "password": secret["password"],
        }

    @classmethod
    def validate(cls) -> None:
        """
        Validate that required configuration values are present and sane.

        Raises:
            ValueError: If any required configuration is missing or invalid.
        """
        required_vars = [
            ("S3_BUCKET_NAME", cls.S3_BUCKET_NAME),
            ("FILE_PREFIX", cls.FILE_PREFIX),
        ]

        missing = [name for name, value in required_vars if not value]
        if missing:
            raise ValueError(
                f"Missing required environment variables: {', '.join(missing)}"
            )

        positive = [
            ("TICK_INTERVAL_SECONDS", cls.TICK_INTERVAL_SECONDS),
            ("MAX_CONCURRENT_FILES", cls.MAX_CONCURRENT_FILES),
            ("LOAD_BATCH_SIZE", cls.LOAD_BATCH_SIZE),
        ]
        invalid = [name for name, value in positive if value <= 0]
        if invalid:
            raise ValueError(f"Must be greater than zero: {', '.join(invalid)}")

        if cls.RECENCY_WINDOW_HOURS < 0:
            raise ValueError("RECENCY_WINDOW_HOURS must not be negative")

    @classmethod
    def recency_window(cls) -> timedelta:
        return timedelta(hours=cls.RECENCY_WINDOW_HOURS)

    @classmethod
    def tick_interval(cls) -> timedelta:
        return timedelta(seconds=cls.TICK_INTERVAL_SECONDS)

    @classmethod
    def get_listing_prefix(cls, file_prefix: Optional[str] = None) -> str:
        """
        Generate the S3 key prefix that every ingest file of a type starts with.

        Args:
            file_prefix: File type prefix, defaults to FILE_PREFIX

        Returns:
            str: e.g. 'ingest/iot_poc' or 'iot_poc'
        """
        file_prefix = file_prefix or cls.FILE_PREFIX
        folder = cls.INGEST_PREFIX.strip("/")
        return f"{folder}/{file_prefix}" if folder else file_prefix

    @classmethod
    def get_checkpoint_stream(cls, mode: str) -> str:
        """
        Name the checkpoint stream for a mode.

        Bounded modes share one stream whose watermark is never advanced;
        current mode owns its own.

        Args:
            mode: 'history', 'rehydrate' or 'current'

        Returns:
            str: Stream identifier, e.g. 'iot_poc-current'
        """
        if mode == "current":
            return f"{cls.FILE_PREFIX}-current"
        if mode in ("history", "rehydrate"):
            return f"{cls.FILE_PREFIX}-history"
        raise ValueError(f"Unknown mode: {mode}")
