# obstracker/core/config.py

from __future__ import annotations

import os
from typing import List

from pydantic import BaseModel


def _env(name: str, default: str) -> str:
    return os.getenv(name, default)


def _env_list(name: str, default: str) -> List[str]:
    raw = _env(name, default)
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


class DataApiConfig(BaseModel):
    """Data API endpoints (Dataverse-style entity sets)."""
    base_url: str = "http://localhost"
    observations_path: str = "/_api/cr650_ia_observations"
    client_updates_path: str = "/_api/cr650_iaclientupdates"
    documents_path: str = "/_api/cr650_ia_documentses"
    token_url: str = ""
    token_timeout_s: float = 5.0
    request_timeout_s: float = 30.0
    list_top: int = 1000


class FileRelayConfig(BaseModel):
    """Attachment relay (automation endpoint)."""
    url: str = ""
    timeout_s: float = 60.0
    max_file_size: int = 10 * 1024 * 1024
    allowed_extensions: List[str] = [".pdf", ".doc", ".docx", ".xls", ".xlsx"]


class TrackerConfig(BaseModel):
    """Tracker and dashboard behaviour."""
    page_size: int = 20
    mark_client_updates_resolved: bool = True
    auto_fill_date_closed: bool = True
    document_base_url: str = ""
    dashboard_url: str = "/Client-Observation-Dashboard/"


class ObsTrackerConfig(BaseModel):
    data_api: DataApiConfig = DataApiConfig()
    file_relay: FileRelayConfig = FileRelayConfig()
    tracker: TrackerConfig = TrackerConfig()
    record_store: str = "inmem"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    debug: bool = False

    @classmethod
    def from_env(cls) -> "ObsTrackerConfig":
        return cls(
            data_api=DataApiConfig(
                base_url=_env("OBSTRACKER_DATA_API_URL", "http://localhost"),
                observations_path=_env("OBSTRACKER_OBSERVATIONS_PATH", "/_api/cr650_ia_observations"),
                client_updates_path=_env("OBSTRACKER_CLIENT_UPDATES_PATH", "/_api/cr650_iaclientupdates"),
                documents_path=_env("OBSTRACKER_DOCUMENTS_PATH", "/_api/cr650_ia_documentses"),
                token_url=_env("OBSTRACKER_TOKEN_URL", ""),
                token_timeout_s=float(_env("OBSTRACKER_TOKEN_TIMEOUT_S", "5.0")),
                request_timeout_s=float(_env("OBSTRACKER_REQUEST_TIMEOUT_S", "30.0")),
                list_top=int(_env("OBSTRACKER_LIST_TOP", "1000")),
            ),
            file_relay=FileRelayConfig(
                url=_env("OBSTRACKER_FILE_RELAY_URL", ""),
                timeout_s=float(_env("OBSTRACKER_FILE_RELAY_TIMEOUT_S", "60.0")),
                max_file_size=int(_env("OBSTRACKER_MAX_FILE_SIZE", str(10 * 1024 * 1024))),
                allowed_extensions=_env_list("OBSTRACKER_ALLOWED_EXTENSIONS", ".pdf,.doc,.docx,.xls,.xlsx"),
            ),
            tracker=TrackerConfig(
                page_size=int(_env("OBSTRACKER_PAGE_SIZE", "20")),
                mark_client_updates_resolved=_env("OBSTRACKER_MARK_CLIENT_UPDATES_RESOLVED", "true").lower() == "true",
                auto_fill_date_closed=_env("OBSTRACKER_AUTO_FILL_DATE_CLOSED", "true").lower() == "true",
                document_base_url=_env("OBSTRACKER_DOCUMENT_BASE_URL", ""),
                dashboard_url=_env("OBSTRACKER_DASHBOARD_URL", "/Client-Observation-Dashboard/"),
            ),
            record_store=_env("OBSTRACKER_RECORD_STORE", "inmem").strip().lower(),
            api_host=_env("OBSTRACKER_API_HOST", "0.0.0.0"),
            api_port=int(_env("OBSTRACKER_API_PORT", "8000")),
            debug=_env("OBSTRACKER_DEBUG", "false").lower() == "true",
        )

config = ObsTrackerConfig.from_env()
