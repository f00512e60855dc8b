from __future__ import annotations

import json
import os
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple

import boto3
from botocore.exceptions import ClientError
from pydantic import BaseModel, Field, field_validator, model_validator

from .admins import parse_admin_ids


# Environment variable names
ENV_PARAM_PREFIX = "PARAM_PREFIX"
ENV_STATE_BUCKET = "STATE_BUCKET"
ENV_STATE_PREFIX = "STATE_PREFIX"  # optional; defaults to "users/"
ENV_LEDGER_URL = "LEDGER_URL"
ENV_LEDGER_DROPBOX_PATH = "LEDGER_DROPBOX_PATH"
ENV_LEDGER_SHEET = "LEDGER_SHEET"
ENV_LEDGER_SHEET_INDEX = "LEDGER_SHEET_INDEX"
ENV_LEDGER_HEADER_ROWS = "LEDGER_HEADER_ROWS"
ENV_LEDGER_COLUMNS = "LEDGER_COLUMNS"  # JSON object, see ledger.parser.LedgerColumns
ENV_WORKBOOK_TTL = "WORKBOOK_TTL_SECONDS"
ENV_CACHE_DIR = "SCHOOLPAY_CACHE_DIR"
ENV_SCHOOL_INFO = "SCHOOL_INFO"  # JSON object, see SchoolInfo
ENV_TIMEZONE = "TIMEZONE"
ENV_CURRENCY = "CURRENCY"
ENV_WORKERS = "WORKERS"
ENV_REPLY_DELAY = "REPLY_DELAY"  # "max" or "min,max" seconds of jitter before replies
ENV_LOG_LEVEL = "LOG_LEVEL"
ENV_LOG_FORMAT = "LOG_FORMAT"

# Secrets read from SSM under PARAM_PREFIX; the upper-cased name is the env fallback
SECRET_NAMES = [
    "telegram_bot_token",
    "fernet_key",
    "admin_ids",
    "dropbox_client_id",
    "dropbox_client_secret",
    "dropbox_refresh_token",
]


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


def _load_ssm_params(prefix: str, names: Iterable[str]) -> Dict[str, Optional[str]]:
    ssm = boto3.client("ssm")
    out: Dict[str, Optional[str]] = {k: None for k in names}
    for name in names:
        full = f"{prefix}{name}"
        try:
            resp = ssm.get_parameter(Name=full, WithDecryption=True)
        except ClientError as e:
            # Leave as None if parameter missing or access denied
            code = e.response.get("Error", {}).get("Code")
            if code in ("ParameterNotFound", "AccessDeniedException"):
                out[name] = None
                continue
            raise
        val = resp.get("Parameter", {}).get("Value")
        out[name] = val if isinstance(val, str) and val != "" else None
    return out


class SchoolInfo(BaseModel):
    name: str = "School"
    assistant_name: str = "Chilo"
    address: str = ""
    phone: str = ""
    email: str = ""
    hours: str = ""
    website: str = ""


class DropboxCredentials(BaseModel):
    client_id: str
    client_secret: str
    refresh_token: str


class Settings(BaseModel):
    """Runtime configuration of the bot process."""

    telegram_bot_token: str
    fernet_key: str
    state_bucket: str
    state_prefix: str = "users/"
    admin_ids: FrozenSet[str] = frozenset()

    ledger_url: Optional[str] = None
    ledger_dropbox_path: Optional[str] = None
    dropbox: Optional[DropboxCredentials] = None
    ledger_sheet: Optional[str] = "Matricula 2025"
    ledger_sheet_index: int = 5
    ledger_header_rows: int = 2
    ledger_columns_json: Optional[str] = None
    workbook_ttl: float = 3600.0
    cache_dir: Optional[str] = None

    school: SchoolInfo = Field(default_factory=SchoolInfo)
    timezone: str = "America/Tegucigalpa"
    currency: str = "L."
    workers: int = 8
    reply_delay: Tuple[float, float] = (0.0, 0.0)
    log_level: str = "INFO"
    log_format: str = "console"

    @field_validator("reply_delay", mode="before")
    @classmethod
    def _parse_reply_delay(cls, v: Any) -> Any:
        if isinstance(v, str):
            parts = [p.strip() for p in v.split(",") if p.strip()]
            if len(parts) == 1:
                return (0.0, float(parts[0]))
            return tuple(float(p) for p in parts)
        return v

    @field_validator("reply_delay")
    @classmethod
    def _check_reply_delay(cls, v: Tuple[float, float]) -> Tuple[float, float]:
        low, high = v
        if low < 0 or high < low:
            raise ValueError("reply delay requires 0 <= min <= max")
        return v

    @model_validator(mode="after")
    def _ledger_source(self) -> "Settings":
        if not self.ledger_url and not self.ledger_dropbox_path:
            raise ValueError(f"one of {ENV_LEDGER_URL} or {ENV_LEDGER_DROPBOX_PATH} is required")
        if self.ledger_dropbox_path and self.dropbox is None:
            raise ValueError("Dropbox credentials are required for LEDGER_DROPBOX_PATH")
        return self

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the environment, reading secrets from SSM when PARAM_PREFIX is set."""
        prefix = _getenv(ENV_PARAM_PREFIX)
        secrets: Dict[str, Optional[str]] = {k: None for k in SECRET_NAMES}
        if prefix:
            secrets = _load_ssm_params(prefix, SECRET_NAMES)
        for name in SECRET_NAMES:
            if not secrets.get(name):
                secrets[name] = _getenv(name.upper())

        dropbox = None
        if secrets["dropbox_client_id"] and secrets["dropbox_client_secret"] and secrets["dropbox_refresh_token"]:
            dropbox = DropboxCredentials(
                client_id=secrets["dropbox_client_id"],
                client_secret=secrets["dropbox_client_secret"],
                refresh_token=secrets["dropbox_refresh_token"],
            )

        school_raw = _getenv(ENV_SCHOOL_INFO)
        school = SchoolInfo.model_validate(json.loads(school_raw)) if school_raw else SchoolInfo()

        return cls(
            telegram_bot_token=_require(secrets["telegram_bot_token"], "telegram_bot_token"),
            fernet_key=_require(secrets["fernet_key"], "fernet_key"),
            state_bucket=_require(_getenv(ENV_STATE_BUCKET), ENV_STATE_BUCKET),
            state_prefix=_getenv(ENV_STATE_PREFIX, "users/"),
            admin_ids=parse_admin_ids(secrets["admin_ids"]),
            ledger_url=_getenv(ENV_LEDGER_URL),
            ledger_dropbox_path=_getenv(ENV_LEDGER_DROPBOX_PATH),
            dropbox=dropbox,
            ledger_sheet=_getenv(ENV_LEDGER_SHEET, "Matricula 2025"),
            ledger_sheet_index=int(_getenv(ENV_LEDGER_SHEET_INDEX, "5")),
            ledger_header_rows=int(_getenv(ENV_LEDGER_HEADER_ROWS, "2")),
            ledger_columns_json=_getenv(ENV_LEDGER_COLUMNS),
            workbook_ttl=float(_getenv(ENV_WORKBOOK_TTL, "3600")),
            cache_dir=_getenv(ENV_CACHE_DIR),
            school=school,
            timezone=_getenv(ENV_TIMEZONE, "America/Tegucigalpa"),
            currency=_getenv(ENV_CURRENCY, "L."),
            workers=int(_getenv(ENV_WORKERS, "8")),
            reply_delay=_getenv(ENV_REPLY_DELAY, "0"),
            log_level=_getenv(ENV_LOG_LEVEL, "INFO"),
            log_format=_getenv(ENV_LOG_FORMAT, "console"),
        )


__all__ = ["DropboxCredentials", "SchoolInfo", "Settings"]
