import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


BUNDLED_PIVOTS = Path(__file__).parent / "data" / "pivots.yaml"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Runtime configuration, passed explicitly to the orchestrator, CLI and API"""
    db_path: str = Field(default="data/bridgescore.db", description="SQLite database file (':memory:' for tests)")
    pivots_path: str = Field(default=str(BUNDLED_PIVOTS), description="YAML pivot library used to seed the store")
    default_framework_version: str = Field(default="1.0", description="Label for the default framework")
    write_attempts: int = Field(default=3, ge=1, description="Attempts at the atomic score + history write")
    org_scoped: bool = Field(default=True, description="Require an organization when listing calls")
    log_level: str = Field(default="INFO")

    bq_project_id: Optional[str] = Field(None, description="BigQuery project for reporting exports")
    bq_dataset: str = Field(default="bridgescore")
    bq_calls_table: str = Field(default="calls")
    bq_history_table: str = Field(default="call_score_history")

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        defaults = cls()
        return cls(
            db_path=os.getenv("BRIDGESCORE_DB_PATH", defaults.db_path),
            pivots_path=os.getenv("BRIDGESCORE_PIVOTS_PATH", defaults.pivots_path),
            default_framework_version=os.getenv("BRIDGESCORE_FRAMEWORK_VERSION", defaults.default_framework_version),
            write_attempts=int(os.getenv("BRIDGESCORE_WRITE_ATTEMPTS", str(defaults.write_attempts))),
            org_scoped=_env_bool("BRIDGESCORE_ORG_SCOPED", defaults.org_scoped),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level),
            bq_project_id=os.getenv("BQ_PROJECT_ID") or None,
            bq_dataset=os.getenv("BQ_DATASET", defaults.bq_dataset),
            bq_calls_table=os.getenv("BQ_CALLS_TABLE", defaults.bq_calls_table),
            bq_history_table=os.getenv("BQ_HISTORY_TABLE", defaults.bq_history_table),
        )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
