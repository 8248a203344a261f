import random
import uuid
from dataclasses import dataclass
from typing import List, Union
from pydantic import AnyHttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    API_V1_STR: str = "/v1"
    PROJECT_NAME: str = "jimeng-api"
    ENVIRONMENT: str = "development"
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # CORS
    BACKEND_CORS_ORIGINS: List[Union[AnyHttpUrl, str]] = ["*"]

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    # Upstream web API
    UPSTREAM_BASE_URL: str = "https://jimeng.jianying.com"
    UPSTREAM_ASSISTANT_ID: str = "513695"
    UPSTREAM_VERSION_CODE: str = "5.8.0"
    UPSTREAM_PLATFORM_CODE: str = "7"
    UPSTREAM_REQUEST_TIMEOUT: int = 45
    UPSTREAM_MAX_RETRIES: int = 3  # per call, on transport errors and HTTP >= 400

    # Object storage (ImageX)
    IMAGEX_BASE_URL: str = "https://imagex.bytedanceapi.com/"
    IMAGEX_REGION: str = "cn-north-1"
    IMAGEX_SERVICE: str = "imagex"
    IMAGEX_DEFAULT_SERVICE_ID: str = "tb4s082cfz"
    IMAGEX_API_VERSION: str = "2018-08-01"
    UPLOAD_TIMEOUT: float = 60.0
    MAX_FILE_SIZE: int = 100 * 1024 * 1024  # 100MB

    # Image job polling
    IMAGE_POLL_MAX_ATTEMPTS: int = 600
    IMAGE_POLL_BASE_DELAY: float = 1.0
    IMAGE_POLL_PROCESSING_STEP: float = 1.0
    IMAGE_POLL_PROCESSING_CAP: int = 1

    # Video job polling
    VIDEO_POLL_MAX_ATTEMPTS: int = 60
    VIDEO_POLL_INITIAL_DELAY: float = 5.0
    VIDEO_POLL_BASE_DELAY: float = 2.0
    VIDEO_POLL_PROCESSING_STEP: float = 2.0
    VIDEO_POLL_PROCESSING_CAP: int = 5

    POLL_MISSING_DELAY_CAP: float = 30.0
    POLL_ALTERNATE_AFTER: int = 10

    # Streaming
    STREAM_HEARTBEAT_INTERVAL: float = 5.0
    STREAM_DEADLINE: float = 120.0
    STREAM_JOB_LIFETIME: float = 25 * 60.0  # upper bound for background jobs

    # Whole-flow retry
    FLOW_RETRY_ATTEMPTS: int = 3
    FLOW_RETRY_DELAY: float = 5.0

    # Rate limiting
    RATE_LIMIT_DEFAULT: str = "200/hour"
    RATE_LIMIT_GENERATION: str = "30/minute"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


@dataclass(frozen=True)
class UpstreamIdentity:
    """Device and account identifiers presented to the upstream web API.

    Built once at startup and shared read-only by every component that talks
    to the upstream service.
    """
    device_id: str
    web_id: str
    user_id: str
    assistant_id: str
    version_code: str
    platform_code: str


def _random_device_number() -> str:
    return str(random.randint(7000000000000000000, 7999999999999999999))


def build_identity(config: "Settings" = None) -> UpstreamIdentity:
    """Generate a fresh identity for this process"""
    config = config or settings
    return UpstreamIdentity(
        device_id=_random_device_number(),
        web_id=_random_device_number(),
        user_id=uuid.uuid4().hex,
        assistant_id=config.UPSTREAM_ASSISTANT_ID,
        version_code=config.UPSTREAM_VERSION_CODE,
        platform_code=config.UPSTREAM_PLATFORM_CODE,
    )


settings = Settings()
