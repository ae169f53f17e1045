"""
photoledger Configuration
=========================

PURPOSE:
    Pydantic-Settings based configuration for the entitlement ledger and
    workflow engine. All settings can be overridden via environment
    variables (PHOTOLEDGER_ prefix) or a local .env file.
"""

import os
from typing import Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "photoledger"
    debug: bool = False  # Echo SQL when True

    # Local persisted state
    data_directory: str = "./data"
    storage_backend: Literal["memory", "json", "sql"] = "json"
    database_url: Optional[str] = None  # Defaults to SQLite under data_directory

    # Backend entitlement service (receipt validation + canonical ledger)
    backend_url: str = "http://localhost:8080"
    backend_api_key: Optional[str] = None
    backend_timeout: float = 10.0

    # AI image-processing capability
    processing_url: str = "http://localhost:8090"
    processing_api_key: Optional[str] = None
    processing_timeout: float = 120.0  # Upper bound for a single step

    # Store catalog
    product_id_prefix: str = "com.photoledger.app"

    # Product decision: unspent allocation on a non-cancelled renewal is
    # forfeited unless this is switched on.
    rollover_on_active_renewal: bool = False

    # Receipt validation retry
    validation_max_attempts: int = 5

    # Logging
    log_directory: str = "logs"
    log_file: str = "photoledger.jsonl"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "PHOTOLEDGER_"

    def get_database_url(self) -> str:
        """Return the SQLAlchemy URL, defaulting to a SQLite file in data_directory."""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{os.path.join(self.data_directory, 'photoledger.db')}"


settings = Settings()
